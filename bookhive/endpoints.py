from bookhive import config, lifecycle, models, schemas
from bookhive.auth import (
    close_session,
    ensure_admin_account,
    get_actor,
    get_current_user,
    hash_password,
    open_session,
    require_admin,
    require_staff,
    session_cookie,
    verify_password,
)
from bookhive.clock import get_now, get_today
from bookhive.database import SessionLocal, commit_or_conflict, engine, get_db
from bookhive.errors import (
    AuthenticationError,
    AuthorizationError,
    LibraryError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from bookhive.damage import router as damage_router
from bookhive.fines import router as fines_router, sync_fine_for_record
from bookhive.lifecycle import Actor, BorrowStatus

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional
from sqlalchemy.orm import Session
from fastapi import FastAPI, Depends, Query, Request, Response, Security, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles


logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        ensure_admin_account(db)
    finally:
        db.close()
    yield


app = FastAPI(
    title="BookHive Circulation API",
    description="Borrow records, extensions, fines, payment proofs and damage reports for the BookHive library",
    version="1.0.0",
    lifespan=lifespan,
)
app.include_router(fines_router)
app.include_router(damage_router)
app.mount(
    "/uploads",
    StaticFiles(directory=str(config.UPLOAD_DIR), check_dir=False),
    name="uploads",
)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    """Render every domain error as ``{"ok": false, "message", "code"}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "message": exc.message, "code": exc.code},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request.")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "message": message, "code": ValidationError.code},
    )


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Simple status message indicating the service is running
    """
    return {"status": "healthy", "service": "bookhive-api"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@app.post("/api/auth/login", response_model=schemas.UserEnvelope)
async def login(
    credentials: schemas.LoginRequest, response: Response, db: Session = Depends(get_db)
):
    """
    Sign in with email and password.

    Internal Working:
    1. Emails are compared case-insensitively
    2. The password is checked against the stored werkzeug hash
    3. A fresh opaque token is stored in session_tokens
    4. The token is sent back as an HttpOnly cookie; clients only need to
       keep sending their cookies

    Raises:
        AuthenticationError: 401 on unknown email or wrong password
    """
    email = credentials.email.strip().lower()
    user = db.query(models.User).filter(models.User.email == email).first()
    if not user or not verify_password(credentials.password, user.password_hash):
        raise AuthenticationError("Invalid email or password.")

    token = open_session(db, user)
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=config.SESSION_COOKIE_SECURE,
    )
    logger.info("User %s signed in", user.id)
    return {"ok": True, "user": user}


@app.post("/api/auth/logout")
async def logout(
    response: Response,
    token: Optional[str] = Security(session_cookie),
    db: Session = Depends(get_db),
):
    """Close the current session. Succeeds even when no session is open."""
    close_session(db, token)
    response.delete_cookie(config.SESSION_COOKIE_NAME)
    return {"ok": True}


@app.get("/api/auth/me", response_model=schemas.UserEnvelope)
async def me(user: models.User = Depends(get_current_user)):
    return {"ok": True, "user": user}


@app.post("/api/auth/change-password")
async def change_password(
    payload: schemas.PasswordChange,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not verify_password(payload.current_password, user.password_hash):
        raise ValidationError("Current password is incorrect.")
    user.password_hash = hash_password(payload.new_password)
    db.commit()
    logger.info("User %s changed their password", user.id)
    return {"ok": True, "message": "Password updated."}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@app.post(
    "/api/users",
    response_model=schemas.UserEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_user(
    payload: schemas.UserCreate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    Create an account (admin only).

    Business Logic:
    - Emails are unique and stored lower-cased
    - The role decides which lifecycle transitions the account may take
    """
    email = payload.email.strip().lower()
    if "@" not in email:
        raise ValidationError("Invalid email format.")

    existing = db.query(models.User).filter(models.User.email == email).first()
    if existing:
        raise ValidationError(f"A user with email {email} already exists.")

    user = models.User(
        email=email,
        name=payload.name.strip(),
        student_id=payload.student_id,
        role=payload.role.value,
        password_hash=hash_password(payload.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Admin %s created user %s (%s)", actor.id, user.id, user.role)
    return {"ok": True, "user": user}


@app.get("/api/users", response_model=schemas.UserList)
async def list_users(
    actor: Actor = Depends(require_staff), db: Session = Depends(get_db)
):
    users = db.query(models.User).order_by(models.User.id).all()
    return {"ok": True, "users": users}


# ---------------------------------------------------------------------------
# Books
# ---------------------------------------------------------------------------


@app.get("/api/books", response_model=schemas.BookList)
async def list_books(
    available_only: bool = Query(False, alias="availableOnly"),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    query = db.query(models.Book)
    if available_only:
        query = query.filter(models.Book.available_copies > 0)
    books = query.order_by(models.Book.title).all()
    return {"ok": True, "books": books}


@app.post(
    "/api/books",
    response_model=schemas.BookEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_book(
    payload: schemas.BookCreate,
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    if payload.isbn:
        existing = db.query(models.Book).filter(models.Book.isbn == payload.isbn).first()
        if existing:
            raise ValidationError(f"Book with ISBN {payload.isbn} already exists.")

    book = models.Book(
        title=payload.title.strip(),
        author=payload.author.strip(),
        isbn=payload.isbn,
        loan_days=payload.loan_days or config.DEFAULT_LOAN_DAYS,
        total_copies=payload.total_copies,
        available_copies=payload.total_copies,
    )
    db.add(book)
    db.commit()
    db.refresh(book)
    return {"ok": True, "book": book}


BOOK_CONFLICT = "This book was changed by someone else. Refresh and try again."


def _get_book(db: Session, book_id: int) -> models.Book:
    book = db.get(models.Book, book_id)
    if book is None:
        raise NotFoundError(f"Book with id {book_id} not found.")
    return book


@app.patch("/api/books/{book_id}", response_model=schemas.BookEnvelope)
async def update_book(
    book_id: int,
    payload: schemas.BookUpdate,
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    Edit a title (librarian/admin).

    Business Logic:
    - ISBNs stay unique
    - totalCopies cannot drop below the copies currently lent out;
      availableCopies moves with it
    """
    book = _get_book(db, book_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update.")

    isbn = changes.get("isbn")
    if isbn and isbn != book.isbn:
        existing = db.query(models.Book).filter(models.Book.isbn == isbn).first()
        if existing:
            raise ValidationError(f"Book with ISBN {isbn} already exists.")

    for field in ("title", "author"):
        if changes.get(field) is not None:
            value = changes[field].strip()
            if not value:
                raise ValidationError(f"The {field} cannot be blank.")
            setattr(book, field, value)
    if "isbn" in changes:
        book.isbn = isbn or None
    if changes.get("loan_days") is not None:
        book.loan_days = payload.loan_days
    if changes.get("total_copies") is not None:
        book.available_copies = lifecycle.resize_stock(
            book.total_copies, book.available_copies, payload.total_copies
        )
        book.total_copies = payload.total_copies

    commit_or_conflict(db, BOOK_CONFLICT)
    db.refresh(book)
    logger.info("Book %s updated by user %s", book_id, actor.id)
    return {"ok": True, "book": book}


@app.post("/api/books/{book_id}/copies", response_model=schemas.BookEnvelope)
async def add_book_copies(
    book_id: int,
    payload: schemas.BookCopies,
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    book = _get_book(db, book_id)
    book.total_copies = (book.total_copies or 0) + payload.count
    book.available_copies = (book.available_copies or 0) + payload.count
    commit_or_conflict(db, BOOK_CONFLICT)
    db.refresh(book)
    logger.info("Added %s copies of book %s", payload.count, book_id)
    return {"ok": True, "book": book}


@app.delete("/api/books/{book_id}")
async def delete_book(
    book_id: int,
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    Remove a title from the catalogue (librarian/admin).

    Raises:
        StateConflictError: 409 while borrow records or damage reports still
            refer to the book; their history is kept
    """
    book = _get_book(db, book_id)
    if book.borrow_records or book.damage_reports:
        raise StateConflictError(
            f"'{book.title}' has borrow or damage history and cannot be deleted."
        )
    db.delete(book)
    commit_or_conflict(db, BOOK_CONFLICT)
    logger.info("Book %s deleted by user %s", book_id, actor.id)
    return {"ok": True, "message": "Book deleted."}


# ---------------------------------------------------------------------------
# Borrow records
# ---------------------------------------------------------------------------

ACTIVE_STATUS_VALUES = [s.value for s in lifecycle.ACTIVE_STATUSES] + [lifecycle.LEGACY_PENDING]


def _get_record(db: Session, record_id: int) -> models.BorrowRecord:
    record = db.get(models.BorrowRecord, record_id)
    if record is None:
        raise NotFoundError(f"Borrow record with id {record_id} not found.")
    return record


def _ensure_visible(record: models.BorrowRecord, actor: Actor):
    if not actor.is_staff and record.user_id != actor.id:
        raise AuthorizationError("You can only view your own borrow records.")


def _get_lendable_book(db: Session, book_id: int, user_id: int) -> models.Book:
    """
    Load a book that can be lent to ``user_id`` right now.

    Raises:
        NotFoundError: the book does not exist
        StateConflictError: no copy is available, or the user already holds
            an active loan of this book
    """
    book = _get_book(db, book_id)

    if book.available_copies is None or book.available_copies < 1:
        raise StateConflictError(f"'{book.title}' is currently not available.")

    active = (
        db.query(models.BorrowRecord)
        .filter(
            models.BorrowRecord.user_id == user_id,
            models.BorrowRecord.book_id == book_id,
            models.BorrowRecord.status.in_(ACTIVE_STATUS_VALUES),
        )
        .first()
    )
    if active:
        raise StateConflictError(
            f"There is already an active borrow record (#{active.id}) for '{book.title}'."
        )
    return book


def _open_loan(
    db: Session,
    user_id: int,
    book: models.Book,
    opening: BorrowStatus,
    borrow_date: date,
    due_date: date,
) -> models.BorrowRecord:
    record = models.BorrowRecord(
        user_id=user_id,
        book_id=book.id,
        borrow_date=borrow_date,
        due_date=due_date,
        status=opening.value,
        fine=0,
        extension_count=0,
        extension_total_days=0,
        extension_request_status=lifecycle.ExtensionRequestStatus.NONE.value,
    )
    book.available_copies -= 1
    db.add(record)
    commit_or_conflict(db, f"'{book.title}' was just borrowed by someone else. Refresh and try again.")
    db.refresh(record)
    logger.info(
        "Borrow record %s opened as %s for user %s (book %s, due %s)",
        record.id, opening.value, user_id, book.id, due_date.isoformat(),
    )
    return record


def _release_copy(book: Optional[models.Book]):
    if book is None:
        return
    book.available_copies = min(book.total_copies, (book.available_copies or 0) + 1)


def _accrue_fines(records, today: date):
    """
    Show the fine accrued as of ``today`` on active records.

    Only the loaded objects change: nothing is flushed or committed, so a
    read never bumps a record's version. Write paths (due date changes,
    extensions, returns) persist the recomputed fine themselves.
    """
    for record in records:
        lifecycle.refresh_fine(record, today, config.DAILY_FINE_RATE)


@app.get("/api/borrow-records", response_model=schemas.RecordList)
async def list_borrow_records(
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    """
    List the borrow records visible to the caller.

    Internal Working:
    1. Staff see every record, everyone else only their own
    2. An optional status filter also matches legacy "pending" rows when
       pending_return is requested
    3. Accrued fines of active records are recomputed against today for
       the response only; the read does not write

    Returns:
        Records, newest first
    """
    query = db.query(models.BorrowRecord)
    if not actor.is_staff:
        query = query.filter(models.BorrowRecord.user_id == actor.id)

    if status_filter:
        wanted = lifecycle.normalize_status(status_filter)
        values = [wanted.value]
        if wanted is BorrowStatus.PENDING_RETURN:
            values.append(lifecycle.LEGACY_PENDING)
        query = query.filter(models.BorrowRecord.status.in_(values))

    records = query.order_by(models.BorrowRecord.id.desc()).all()
    _accrue_fines(records, today)
    return {"ok": True, "records": records}


@app.get("/api/borrow-records/my", response_model=schemas.RecordList)
async def list_my_borrow_records(
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    records = (
        db.query(models.BorrowRecord)
        .filter(models.BorrowRecord.user_id == actor.id)
        .order_by(models.BorrowRecord.id.desc())
        .all()
    )
    _accrue_fines(records, today)
    return {"ok": True, "records": records}


@app.post(
    "/api/borrow-records",
    response_model=schemas.RecordEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_borrow_record(
    payload: schemas.BorrowCreate,
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    """
    Staff-initiated borrow: the copy is handed over immediately.

    Business Logic:
    1. Only librarians and admins may open loans for other users
    2. The borrower and the book must exist
    3. borrowDate defaults to today; dueDate may not precede it
    4. The record starts as "borrowed" and one copy is consumed

    Raises:
        AuthorizationError, NotFoundError, ValidationError, StateConflictError
    """
    opening = lifecycle.opening_status(actor, self_service=False)

    borrower = db.get(models.User, payload.user_id)
    if borrower is None:
        raise NotFoundError(f"User with id {payload.user_id} not found.")

    book = _get_lendable_book(db, payload.book_id, borrower.id)
    borrow_date = payload.borrow_date or today
    lifecycle.validate_loan_dates(borrow_date, payload.due_date)

    record = _open_loan(db, borrower.id, book, opening, borrow_date, payload.due_date)
    return {"ok": True, "record": record}


@app.post(
    "/api/borrow-records/self",
    response_model=schemas.RecordEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_self_borrow(
    payload: schemas.SelfBorrowCreate,
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    """
    Self-service borrow: the record waits for the librarian to hand over the book.

    The due date is today plus the book's configured loan duration.
    """
    opening = lifecycle.opening_status(actor, self_service=True)
    book = _get_lendable_book(db, payload.book_id, actor.id)
    due_date = lifecycle.compute_due_date(today, book.loan_days)

    record = _open_loan(db, actor.id, book, opening, today, due_date)
    return {
        "ok": True,
        "record": record,
        "message": "Borrow request submitted. Please pick up the book at the library.",
    }


@app.get("/api/borrow-records/{record_id}", response_model=schemas.RecordEnvelope)
async def get_borrow_record(
    record_id: int,
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    record = _get_record(db, record_id)
    _ensure_visible(record, actor)
    _accrue_fines([record], today)
    return {"ok": True, "record": record}


@app.patch("/api/borrow-records/{record_id}", response_model=schemas.RecordEnvelope)
async def update_borrow_record(
    record_id: int,
    payload: schemas.BorrowUpdate,
    actor: Actor = Depends(get_actor),
    today: date = Depends(get_today),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Apply a lifecycle transition or a due date change to one record.

    Internal Working:
    1. With ``status``: the lifecycle decides whether the transition exists
       and whether the caller may take it (confirm pickup, request return,
       reject return, finalize return); ``expectedStatus`` pins the source
       state the caller acted on
    2. Finalizing sets the return date (default today), settles the fine,
       frees a copy of the book and syncs the linked fine record; a
       pending extension request is closed as disapproved
    3. With only ``dueDate``: staff change the due date and the accrued fine
       is recomputed
    4. The commit is a compare-and-swap on the record's version, so two
       concurrent transitions on the same record cannot both succeed

    Raises:
        NotFoundError: 404 if the record does not exist
        StateConflictError: 409 for illegal or stale transitions
        AuthorizationError: 403 if the caller's role does not allow it
        ValidationError: 400 for bad dates, amounts or an empty update
    """
    record = _get_record(db, record_id)

    if payload.status is not None:
        target = lifecycle.normalize_status(payload.status)
        source = record.status
        if target is BorrowStatus.RETURNED:
            final_fine = lifecycle.finalize_return(
                record,
                actor,
                payload.return_date or today,
                payload.fine,
                config.DAILY_FINE_RATE,
                expected=payload.expected_status,
                now=now,
            )
            _release_copy(record.book)
            sync_fine_for_record(db, record, final_fine)
        else:
            lifecycle.transition(record, target, actor, expected=payload.expected_status)
        commit_or_conflict(db)
        logger.info(
            "Borrow record %s: %s -> %s by user %s",
            record_id, source, target.value, actor.id,
        )
    elif payload.due_date is not None:
        lifecycle.update_due_date(record, actor, payload.due_date)
        lifecycle.refresh_fine(record, today, config.DAILY_FINE_RATE)
        commit_or_conflict(db)
        logger.info(
            "Borrow record %s due date set to %s by user %s",
            record_id, payload.due_date.isoformat(), actor.id,
        )
    else:
        raise ValidationError("Nothing to update. Provide a status or a due date.")

    db.refresh(record)
    return {"ok": True, "record": record}


@app.post("/api/borrow-records/{record_id}/extend", response_model=schemas.RecordEnvelope)
async def extend_borrow_record(
    record_id: int,
    payload: schemas.ExtensionCreate,
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    """
    Extend a loan, or ask for an extension.

    Business Logic:
    - Librarians and admins extend immediately (due date moves now)
    - Everyone else files a request that waits for staff approval
    - Days are truncated to whole days; less than one day is rejected
    - A pending request blocks any new extension on the record
    """
    record = _get_record(db, record_id)
    policy = lifecycle.request_extension(record, actor, payload.days, now, payload.reason)

    if isinstance(policy, lifecycle.Immediate):
        lifecycle.refresh_fine(record, today, config.DAILY_FINE_RATE)
        message = f"Extension applied. New due date: {record.due_date.isoformat()}."
    else:
        message = (
            f"Requested +{record.extension_requested_days} day(s). "
            "Waiting for librarian approval."
        )

    commit_or_conflict(db)
    logger.info("Borrow record %s extension (%s) by user %s", record_id, policy.kind, actor.id)
    db.refresh(record)
    return {"ok": True, "record": record, "message": message}


async def _decide(record_id: int, approve: bool, note, actor, now, today, db):
    record = _get_record(db, record_id)
    outcome = lifecycle.decide_extension(record, actor, approve, now, note)
    if approve:
        lifecycle.refresh_fine(record, today, config.DAILY_FINE_RATE)
    commit_or_conflict(db)
    logger.info("Borrow record %s extension %s by user %s", record_id, outcome.value, actor.id)
    db.refresh(record)
    return record


@app.post(
    "/api/borrow-records/{record_id}/extend/approve",
    response_model=schemas.RecordEnvelope,
)
async def approve_extension(
    record_id: int,
    payload: Optional[schemas.ExtensionDecision] = None,
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    note = payload.note if payload else None
    record = await _decide(record_id, True, note, actor, now, today, db)
    return {
        "ok": True,
        "record": record,
        "message": f"Extension approved. New due date: {record.due_date.isoformat()}.",
    }


@app.post(
    "/api/borrow-records/{record_id}/extend/disapprove",
    response_model=schemas.RecordEnvelope,
)
async def disapprove_extension(
    record_id: int,
    payload: Optional[schemas.ExtensionDecision] = None,
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    today: date = Depends(get_today),
    db: Session = Depends(get_db),
):
    note = payload.note if payload else None
    record = await _decide(record_id, False, note, actor, now, today, db)
    return {"ok": True, "record": record, "message": "Extension request disapproved."}
