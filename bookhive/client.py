"""
Typed client for the BookHive circulation API.

``LibraryClient`` is what a front end uses to drive the borrow lifecycle.
The server is authoritative; the client mirrors its rules so that input is
validated before any request and obviously illegal actions are refused with
the same message the server would give.

Internal Working:
- Cookies carry the session, so one ``httpx.Client`` is one signed-in user
- Every failure becomes a ``bookhive.errors`` exception whose message can be
  shown as is; ``TransportError`` means the API was unreachable, not that
  the data was wrong
- Nothing is retried automatically
"""

import logging
import mimetypes
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import httpx

from bookhive import config, lifecycle, schemas
from bookhive.errors import (
    ERRORS_BY_CODE,
    ERRORS_BY_STATUS,
    LibraryError,
    TransportError,
    ValidationError,
)
from bookhive.lifecycle import BorrowStatus, FineStatus
from bookhive.session import RememberMeStore, load_session


logger = logging.getLogger(__name__)

RecordRef = Union[int, str, schemas.BorrowRecord]
FineRef = Union[int, str, schemas.Fine]
ProofFile = Union[str, Path, tuple]


def error_from_response(response: httpx.Response) -> LibraryError:
    """
    Turn an error response into the matching ``LibraryError``.

    The message is taken from the JSON body (``message``, or FastAPI's
    ``detail``), else the plain-text body, else ``HTTP <status>``. The class
    is picked by the body's ``code`` first and by the status second.
    """
    message = f"HTTP {response.status_code}"
    code = None

    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            if isinstance(data.get("message"), str):
                message = data["message"]
            elif isinstance(data.get("detail"), str):
                message = data["detail"]
            code = data.get("code")
    else:
        text = response.text.strip()
        if text:
            message = text

    cls = ERRORS_BY_CODE.get(code) or ERRORS_BY_STATUS.get(response.status_code, LibraryError)
    error = cls(message)
    if cls is LibraryError:
        error.status_code = response.status_code
    return error


class BookAvailabilityCache:
    """
    Book availability as last seen by this client.

    ``refresh`` stores what the server reported. ``mark_unavailable`` adds an
    optimistic entry for a book the user just borrowed so it can be shown as
    taken right away; optimistic entries are display hints only and are
    dropped by the next refresh.
    """

    def __init__(self):
        self._books: Dict[int, schemas.Book] = {}
        self._optimistic: Dict[int, bool] = {}

    def refresh(self, books: Iterable[schemas.Book]):
        self._books = {book.id: book for book in books}
        self._optimistic.clear()

    def mark_unavailable(self, book_id):
        self._optimistic[int(book_id)] = False

    def is_optimistic(self, book_id) -> bool:
        return int(book_id) in self._optimistic

    def get(self, book_id) -> Optional[schemas.Book]:
        return self._books.get(int(book_id))

    def put(self, book: schemas.Book):
        self._books[book.id] = book
        self._optimistic.pop(book.id, None)

    def forget(self, book_id):
        self._books.pop(int(book_id), None)
        self._optimistic.pop(int(book_id), None)

    def is_available(self, book_id) -> Optional[bool]:
        """True/False if known, None if this client has never seen the book."""
        book_id = int(book_id)
        if book_id in self._optimistic:
            return self._optimistic[book_id]
        book = self._books.get(book_id)
        if book is None:
            return None
        return book.available_copies > 0


def _ref_id(ref) -> str:
    return str(getattr(ref, "id", ref))


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _proof_part(item: ProofFile):
    """Normalise a proof into ``(filename, content, content_type)``."""
    if isinstance(item, (str, Path)):
        path = Path(item)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return path.name, path.read_bytes(), content_type
    name, content, content_type = item
    return name, content, (content_type or "application/octet-stream").lower()


def _proof_parts(field: str, files: Iterable[ProofFile], allow_pdf: bool = True):
    parts = [_proof_part(item) for item in files]
    if len(parts) > config.MAX_PROOFS_PER_UPLOAD:
        raise ValidationError(
            f"You can upload at most {config.MAX_PROOFS_PER_UPLOAD} files at a time."
        )
    for name, content, content_type in parts:
        is_pdf = allow_pdf and content_type == "application/pdf"
        if not (content_type.startswith("image/") or is_pdf):
            kind = "an image or PDF receipt" if allow_pdf else "an image"
            raise ValidationError(f"'{name}' is not {kind}.")
        if not content:
            raise ValidationError(f"'{name}' is empty.")
    return [(field, part) for part in parts]


class LibraryClient:
    """One signed-in user talking to the circulation API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        remember_store: Optional[RememberMeStore] = None,
        timeout: Optional[float] = None,
    ):
        if http is None:
            self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
            http = httpx.Client(
                base_url=self.base_url,
                timeout=timeout if timeout is not None else config.HTTP_TIMEOUT,
            )
        else:
            self.base_url = (base_url or str(http.base_url)).rstrip("/")
        self.http = http
        self.remember_store = remember_store
        self.session = load_session(self.base_url, remember_store)
        self.books = BookAvailabilityCache()

    def close(self):
        self.http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"/api{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self.http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("Cannot reach %s: %s", self.base_url, exc)
            details = str(exc)
            tail = f" Details: {details}" if details else ""
            raise TransportError(
                f"Cannot reach the API ({self.base_url}). "
                f"Is the server running and allowing this origin?{tail}"
            ) from exc

        if response.is_error:
            raise error_from_response(response)
        if "application/json" not in response.headers.get("content-type", "").lower():
            return {}
        return response.json()

    def _record(self, data: dict) -> schemas.BorrowRecord:
        return schemas.RecordEnvelope.model_validate(data).record

    def _fine(self, data: dict) -> schemas.Fine:
        return schemas.FineEnvelope.model_validate(data).fine

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, remember: bool = False) -> schemas.User:
        if not email or not email.strip():
            raise ValidationError("Email is required.")
        if not password:
            raise ValidationError("Password is required.")

        data = self._request(
            "POST", "/auth/login", json={"email": email.strip(), "password": password}
        )
        user = schemas.UserEnvelope.model_validate(data).user
        self.session.sign_in(user)

        if self.remember_store is not None:
            if remember:
                self.remember_store.save(user.email)
                self.session.remembered_email = user.email
            else:
                self.remember_store.clear()
                self.session.remembered_email = None
        return user

    def logout(self):
        try:
            self._request("POST", "/auth/logout")
        finally:
            self.session.teardown()
            self.http.cookies.clear()

    def me(self) -> schemas.User:
        data = self._request("GET", "/auth/me")
        user = schemas.UserEnvelope.model_validate(data).user
        self.session.sign_in(user)
        return user

    def change_password(self, current_password: str, new_password: str, confirm_password: str):
        if new_password != confirm_password:
            raise ValidationError("New password and confirmation do not match.")
        if len(new_password) < 8:
            raise ValidationError("New password must be at least 8 characters.")
        self._request(
            "POST",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )

    # ------------------------------------------------------------------
    # Users and books
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: str,
        password: str,
        role: str = "student",
        student_id: Optional[str] = None,
    ) -> schemas.User:
        payload = {
            "email": email,
            "name": name,
            "password": password,
            "role": lifecycle.normalize_role(role).value,
            "studentId": student_id,
        }
        data = self._request("POST", "/users", json=payload)
        return schemas.UserEnvelope.model_validate(data).user

    def list_users(self) -> List[schemas.User]:
        return schemas.UserList.model_validate(self._request("GET", "/users")).users

    def list_books(self, available_only: bool = False) -> List[schemas.Book]:
        """Fetch the catalogue; this is the authoritative refresh of the book cache."""
        params = {"availableOnly": "true"} if available_only else None
        books = schemas.BookList.model_validate(
            self._request("GET", "/books", params=params)
        ).books
        self.books.refresh(books)
        return books

    def create_book(
        self,
        title: str,
        author: str,
        isbn: Optional[str] = None,
        loan_days: Optional[int] = None,
        total_copies: int = 1,
    ) -> schemas.Book:
        payload = {
            "title": title,
            "author": author,
            "isbn": isbn,
            "loanDays": loan_days,
            "totalCopies": total_copies,
        }
        data = self._request("POST", "/books", json=payload)
        return schemas.BookEnvelope.model_validate(data).book

    def update_book(
        self,
        book,
        title: Optional[str] = None,
        author: Optional[str] = None,
        isbn: Optional[str] = None,
        loan_days: Optional[int] = None,
        total_copies: Optional[int] = None,
    ) -> schemas.Book:
        """Edit a title; arguments left as None keep their value."""
        fields = {
            "title": title,
            "author": author,
            "isbn": isbn,
            "loanDays": loan_days,
            "totalCopies": total_copies,
        }
        payload = {key: value for key, value in fields.items() if value is not None}
        if not payload:
            raise ValidationError("Nothing to update.")
        if total_copies is not None and total_copies < 0:
            raise ValidationError("Total copies cannot be negative.")
        data = self._request("PATCH", f"/books/{_ref_id(book)}", json=payload)
        book = schemas.BookEnvelope.model_validate(data).book
        self.books.put(book)
        return book

    def add_book_copies(self, book, count: int) -> schemas.Book:
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationError("Add at least one copy.")
        data = self._request("POST", f"/books/{_ref_id(book)}/copies", json={"count": count})
        book = schemas.BookEnvelope.model_validate(data).book
        self.books.put(book)
        return book

    def delete_book(self, book):
        self._request("DELETE", f"/books/{_ref_id(book)}")
        self.books.forget(_ref_id(book))

    # ------------------------------------------------------------------
    # Borrow records
    # ------------------------------------------------------------------

    def list_records(self, status=None) -> List[schemas.BorrowRecord]:
        """All records visible to the signed-in user (everything for staff)."""
        params = {"status": lifecycle.normalize_status(status).value} if status else None
        data = self._request("GET", "/borrow-records", params=params)
        return schemas.RecordList.model_validate(data).records

    def list_my_records(self) -> List[schemas.BorrowRecord]:
        data = self._request("GET", "/borrow-records/my")
        return schemas.RecordList.model_validate(data).records

    def get_record(self, record: RecordRef) -> schemas.BorrowRecord:
        return self._record(self._request("GET", f"/borrow-records/{_ref_id(record)}"))

    def create_borrow(
        self,
        user_id,
        book_id,
        due_date: date,
        borrow_date: Optional[date] = None,
    ) -> schemas.BorrowRecord:
        if borrow_date is not None:
            lifecycle.validate_loan_dates(borrow_date, due_date)
        payload = {
            "userId": int(user_id),
            "bookId": int(book_id),
            "borrowDate": _iso(borrow_date),
            "dueDate": _iso(due_date),
        }
        return self._record(self._request("POST", "/borrow-records", json=payload))

    def create_self_borrow(self, book_id) -> schemas.BorrowRecord:
        record = self._record(
            self._request("POST", "/borrow-records/self", json={"bookId": int(book_id)})
        )
        self.books.mark_unavailable(record.book_id)
        return record

    def _check_transition(self, record: RecordRef, target: BorrowStatus, expected=None):
        if not isinstance(record, schemas.BorrowRecord):
            return
        actor = self.session.actor
        if actor is not None:
            lifecycle.check_transition(record.status, target, actor, record.user_id)
        lifecycle.ensure_expected_status(record, expected)

    def _transition(self, record: RecordRef, target: BorrowStatus, expected: BorrowStatus):
        self._check_transition(record, target, expected)
        payload = {"status": target.value, "expectedStatus": expected.value}
        return self._record(
            self._request("PATCH", f"/borrow-records/{_ref_id(record)}", json=payload)
        )

    def confirm_pickup(self, record: RecordRef) -> schemas.BorrowRecord:
        return self._transition(record, BorrowStatus.BORROWED, BorrowStatus.PENDING_PICKUP)

    def request_return(self, record: RecordRef) -> schemas.BorrowRecord:
        """Ask to return a borrowed book online; the copy stays out until staff finalize."""
        return self._transition(record, BorrowStatus.PENDING_RETURN, BorrowStatus.BORROWED)

    def reject_return(self, record: RecordRef) -> schemas.BorrowRecord:
        return self._transition(record, BorrowStatus.BORROWED, BorrowStatus.PENDING_RETURN)

    def finalize_return(
        self,
        record: RecordRef,
        return_date: Optional[date] = None,
        fine=None,
    ) -> schemas.BorrowRecord:
        """Mark the book returned; without ``fine`` the server computes the overdue fine."""
        self._check_transition(record, BorrowStatus.RETURNED)
        payload = {"status": BorrowStatus.RETURNED.value}
        if return_date is not None:
            payload["returnDate"] = _iso(return_date)
        if fine is not None:
            payload["fine"] = float(lifecycle.normalize_amount(fine, "Fine"))
        return self._record(
            self._request("PATCH", f"/borrow-records/{_ref_id(record)}", json=payload)
        )

    def update_due_date(self, record: RecordRef, due_date: date) -> schemas.BorrowRecord:
        if isinstance(record, schemas.BorrowRecord):
            lifecycle.ensure_active(record)
            lifecycle.validate_loan_dates(record.borrow_date, due_date)
        return self._record(
            self._request(
                "PATCH",
                f"/borrow-records/{_ref_id(record)}",
                json={"dueDate": _iso(due_date)},
            )
        )

    def request_extension(
        self, record: RecordRef, days, reason: Optional[str] = None
    ) -> schemas.RecordEnvelope:
        """
        Extend a loan (staff) or request an extension (everyone else).

        Days are truncated to whole days before sending; anything below one
        day is refused without a request.

        Returns:
            The updated record and the server's message
        """
        days = lifecycle.normalize_extension_days(days)
        actor = self.session.actor
        if isinstance(record, schemas.BorrowRecord) and actor is not None:
            lifecycle.ensure_can_request_extension(record, actor)

        data = self._request(
            "POST",
            f"/borrow-records/{_ref_id(record)}/extend",
            json={"days": days, "reason": reason},
        )
        return schemas.RecordEnvelope.model_validate(data)

    def _decide_extension(self, record: RecordRef, decision: str, note: Optional[str]):
        if isinstance(record, schemas.BorrowRecord):
            lifecycle.ensure_active(record)
            lifecycle.ensure_pending_extension(record)
        data = self._request(
            "POST",
            f"/borrow-records/{_ref_id(record)}/extend/{decision}",
            json={"note": note},
        )
        return self._record(data)

    def approve_extension(self, record: RecordRef, note: Optional[str] = None) -> schemas.BorrowRecord:
        return self._decide_extension(record, "approve", note)

    def disapprove_extension(self, record: RecordRef, note: Optional[str] = None) -> schemas.BorrowRecord:
        return self._decide_extension(record, "disapprove", note)

    # ------------------------------------------------------------------
    # Fines
    # ------------------------------------------------------------------

    def list_fines(self, user_id=None, status=None) -> List[schemas.Fine]:
        params = {}
        if user_id is not None and user_id != "":
            params["userId"] = str(user_id)
        if status:
            params["status"] = lifecycle.normalize_fine_status(status).value
        data = self._request("GET", "/fines", params=params or None)
        return schemas.FineList.model_validate(data).fines

    def list_my_fines(self) -> List[schemas.Fine]:
        return schemas.FineList.model_validate(self._request("GET", "/fines/my")).fines

    def update_fine(
        self,
        fine: FineRef,
        status=None,
        amount=None,
        reason: Optional[str] = None,
    ) -> schemas.Fine:
        payload = {}
        if isinstance(fine, schemas.Fine):
            lifecycle.ensure_fine_open(fine)
        if status is not None:
            status = lifecycle.normalize_fine_status(status)
            actor = self.session.actor
            if isinstance(fine, schemas.Fine) and actor is not None and status is not fine.status:
                lifecycle.check_fine_transition(fine.status, status, actor, fine.user_id)
            payload["status"] = status.value
        if amount is not None:
            payload["amount"] = float(lifecycle.normalize_amount(amount))
        if reason is not None:
            payload["reason"] = reason
        if not payload:
            raise ValidationError("Nothing to update.")
        return self._fine(self._request("PATCH", f"/fines/{_ref_id(fine)}", json=payload))

    def update_fine_status(self, fine: FineRef, status) -> schemas.Fine:
        return self.update_fine(fine, status=status)

    def pay_fine(
        self,
        fine: FineRef,
        proofs: Iterable[ProofFile] = (),
        kind: Optional[str] = None,
    ) -> schemas.FineEnvelope:
        """Submit proof of payment; the fine waits for staff verification."""
        actor = self.session.actor
        if isinstance(fine, schemas.Fine) and actor is not None:
            lifecycle.check_fine_transition(
                fine.status, FineStatus.PENDING_VERIFICATION, actor, fine.user_id
            )
        files = _proof_parts("proofs", proofs)
        if not files:
            raise ValidationError("Attach at least one proof of payment.")
        data = self._request(
            "POST",
            f"/fines/{_ref_id(fine)}/pay",
            data={"kind": kind} if kind else None,
            files=files,
        )
        return schemas.FineEnvelope.model_validate(data)

    def upload_fine_proofs(
        self,
        fine: FineRef,
        files: Iterable[ProofFile],
        kind: Optional[str] = None,
    ) -> List[schemas.FineProof]:
        if isinstance(fine, schemas.Fine):
            lifecycle.ensure_fine_open(fine)
        parts = _proof_parts("files", files)
        if not parts:
            raise ValidationError("Choose at least one file to upload.")
        data = self._request(
            "POST",
            f"/fines/{_ref_id(fine)}/proofs",
            data={"kind": kind} if kind else None,
            files=parts,
        )
        return schemas.ProofList.model_validate(data).proofs

    def list_fine_proofs(self, fine: FineRef) -> List[schemas.FineProof]:
        data = self._request("GET", f"/fines/{_ref_id(fine)}/proofs")
        return schemas.ProofList.model_validate(data).proofs

    # ------------------------------------------------------------------
    # Damage reports
    # ------------------------------------------------------------------

    def create_damage_report(
        self,
        book_id,
        damage_type: str,
        severity,
        notes: Optional[str] = None,
        fee=None,
        photos: Iterable[ProofFile] = (),
        user_id=None,
    ) -> schemas.DamageReport:
        """Report a damaged book with up to three photos."""
        if not (damage_type or "").strip():
            raise ValidationError("Describe the type of damage.")
        form = {
            "bookId": str(_ref_id(book_id)),
            "damageType": damage_type.strip(),
            "severity": lifecycle.normalize_damage_severity(severity).value,
        }
        if notes:
            form["notes"] = notes
        if fee is not None:
            form["fee"] = str(lifecycle.normalize_amount(fee, "Fee"))
        if user_id is not None:
            form["userId"] = str(user_id)
        files = _proof_parts("photos", photos, allow_pdf=False)
        data = self._request("POST", "/damage-reports", data=form, files=files or None)
        return schemas.DamageReportEnvelope.model_validate(data).report

    def list_damage_reports(self, user_id=None, status=None) -> List[schemas.DamageReport]:
        params = {}
        if user_id is not None and user_id != "":
            params["userId"] = str(user_id)
        if status:
            params["status"] = lifecycle.normalize_damage_status(status).value
        data = self._request("GET", "/damage-reports", params=params or None)
        return schemas.DamageReportList.model_validate(data).reports

    def list_my_damage_reports(self) -> List[schemas.DamageReport]:
        data = self._request("GET", "/damage-reports/my")
        return schemas.DamageReportList.model_validate(data).reports

    def update_damage_report(
        self,
        report,
        status=None,
        severity=None,
        fee=None,
        notes: Optional[str] = None,
    ) -> schemas.DamageReport:
        payload = {}
        if isinstance(report, schemas.DamageReport):
            lifecycle.ensure_damage_open(report)
        if status is not None:
            status = lifecycle.normalize_damage_status(status)
            actor = self.session.actor
            if isinstance(report, schemas.DamageReport) and actor is not None and status is not report.status:
                lifecycle.check_damage_transition(report.status, status, actor)
            payload["status"] = status.value
        if severity is not None:
            payload["severity"] = lifecycle.normalize_damage_severity(severity).value
        if fee is not None:
            payload["fee"] = float(lifecycle.normalize_amount(fee, "Fee"))
        if notes is not None:
            payload["notes"] = notes
        if not payload:
            raise ValidationError("Nothing to update.")
        data = self._request("PATCH", f"/damage-reports/{_ref_id(report)}", json=payload)
        return schemas.DamageReportEnvelope.model_validate(data).report

    def delete_damage_report(self, report):
        self._request("DELETE", f"/damage-reports/{_ref_id(report)}")
