import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.orm.exc import StaleDataError

from bookhive import config
from bookhive.errors import StateConflictError


logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    The session is yielded to the endpoint and always closed afterwards,
    even when the endpoint raises.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_conflict(db: Session, message: str = "This record was changed by someone else. Refresh and try again."):
    """
    Commit the session, turning a lost compare-and-swap into a StateConflictError.

    Internal Working:
    1. Versioned models carry a version_id_col, so every UPDATE is issued as
       ``UPDATE ... WHERE id = :id AND version = :loaded_version``
    2. If another request moved the row first, the UPDATE matches zero rows
       and SQLAlchemy raises StaleDataError during flush
    3. We roll back and report a conflict; nothing of this request is kept
    """
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Stale write rejected: %s", exc)
        raise StateConflictError(message) from exc
