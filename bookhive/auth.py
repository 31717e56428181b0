import logging
import secrets
from typing import Optional

from fastapi import Depends, Security
from fastapi.security import APIKeyCookie
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from bookhive import config, models
from bookhive.database import get_db
from bookhive.errors import AuthenticationError, AuthorizationError
from bookhive.lifecycle import Actor, Role, normalize_role


logger = logging.getLogger(__name__)

session_cookie = APIKeyCookie(name=config.SESSION_COOKIE_NAME, auto_error=False)


def hash_password(password: str) -> str:
    """Salted hash in werkzeug's ``method$salt$hash`` format."""
    return generate_password_hash(password)


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        return check_password_hash(stored, password)
    except ValueError:
        # unknown hash method in a damaged row
        return False


def open_session(db: Session, user: models.User) -> str:
    """Create a new session token for ``user`` and return it."""
    token = secrets.token_hex(32)
    db.add(models.SessionToken(token=token, user_id=user.id))
    db.commit()
    return token


def close_session(db: Session, token: Optional[str]) -> bool:
    if not token:
        return False
    deleted = (
        db.query(models.SessionToken)
        .filter(models.SessionToken.token == token)
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


async def get_current_user(
    token: Optional[str] = Security(session_cookie), db: Session = Depends(get_db)
) -> models.User:
    """
    Dependency resolving the signed-in user from the session cookie.

    Internal Working:
    1. FastAPI extracts the session cookie value
    2. We look the token up in session_tokens
    3. If it is missing or unknown, AuthenticationError stops the request
       (rendered as a 401 by the application's error handler)

    Raises:
        AuthenticationError: no cookie, or the session was closed
    """
    if token is None:
        raise AuthenticationError("You are not signed in. Please log in.")

    row = (
        db.query(models.SessionToken)
        .filter(models.SessionToken.token == token)
        .first()
    )
    if row is None:
        raise AuthenticationError("Your session has expired. Please log in again.")
    return row.user


async def get_actor(user: models.User = Depends(get_current_user)) -> Actor:
    return Actor(id=user.id, role=normalize_role(user.role))


async def require_staff(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_staff:
        raise AuthorizationError("Only librarians and admins can do this.")
    return actor


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role is not Role.ADMIN:
        raise AuthorizationError("Only admins can do this.")
    return actor


def ensure_admin_account(db: Session) -> Optional[models.User]:
    """Create the bootstrap admin from the environment if it does not exist yet."""
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        return None

    email = config.ADMIN_EMAIL.strip().lower()
    user = db.query(models.User).filter(models.User.email == email).first()
    if user:
        return user

    user = models.User(
        email=email,
        name="Administrator",
        role=Role.ADMIN.value,
        password_hash=hash_password(config.ADMIN_PASSWORD),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Created bootstrap admin account %s", email)
    return user
