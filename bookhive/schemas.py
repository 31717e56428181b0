from datetime import date, datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from bookhive.lifecycle import (
    BorrowStatus,
    DamageSeverity,
    DamageStatus,
    ExtensionRequestStatus,
    FineStatus,
    Role,
    normalize_extension_status,
    normalize_role,
    normalize_status,
)


class CamelModel(BaseModel):
    """
    Base schema for everything that crosses the wire.

    Internal Working:
    - alias_generator=to_camel: fields are snake_case in Python and
      camelCase in JSON (due_date <-> dueDate)
    - populate_by_name=True: Python callers may still use snake_case names
    - from_attributes=True: schemas can be built straight from ORM objects
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class PasswordChange(CamelModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


class UserCreate(CamelModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=8, max_length=128)
    role: Role = Role.STUDENT
    student_id: Optional[str] = Field(None, max_length=50)


class User(CamelModel):
    id: int
    email: str
    name: str
    role: Role
    student_id: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _known_role(cls, value):
        return normalize_role(value)


class UserEnvelope(CamelModel):
    ok: bool = True
    user: User


class UserList(CamelModel):
    ok: bool = True
    users: List[User] = []


class BookCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=500)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    loan_days: Optional[int] = Field(None, ge=1, le=365)
    total_copies: int = Field(1, ge=1)


class Book(CamelModel):
    id: int
    title: str
    author: str
    isbn: Optional[str] = None
    loan_days: int
    total_copies: int
    available_copies: int


class BookUpdate(CamelModel):
    """Partial update of a title; omitted fields keep their value."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    loan_days: Optional[int] = Field(None, ge=1, le=365)
    total_copies: Optional[int] = Field(None, ge=0)


class BookCopies(CamelModel):
    count: int = Field(..., ge=1)


class BookEnvelope(CamelModel):
    ok: bool = True
    book: Book


class BookList(CamelModel):
    ok: bool = True
    books: List[Book] = []


class BorrowCreate(CamelModel):
    """Staff-initiated borrow with explicit dates."""

    user_id: int = Field(..., gt=0)
    book_id: int = Field(..., gt=0)
    borrow_date: Optional[date] = None
    due_date: date


class SelfBorrowCreate(CamelModel):
    book_id: int = Field(..., gt=0)


class BorrowUpdate(CamelModel):
    """
    Partial update of a borrow record.

    ``status`` drives a lifecycle transition (``returnDate`` and ``fine`` only
    matter when finalizing a return); ``dueDate`` alone is a due date change.
    ``expectedStatus`` is the status the caller saw: the transition is
    refused if the record has moved on since.
    """

    status: Optional[str] = None
    expected_status: Optional[str] = None
    return_date: Optional[date] = None
    fine: Optional[float] = None
    due_date: Optional[date] = None


class ExtensionCreate(CamelModel):
    days: float
    reason: Optional[str] = Field(None, max_length=500)


class ExtensionDecision(CamelModel):
    note: Optional[str] = Field(None, max_length=500)


class BorrowRecord(CamelModel):
    """
    A borrow record as seen by clients.

    Legacy "pending" statuses are reported as pending_return.
    """

    id: int
    user_id: int
    book_id: int
    student_name: Optional[str] = None
    student_email: Optional[str] = None
    student_id: Optional[str] = None
    book_title: Optional[str] = None

    borrow_date: date
    due_date: date
    return_date: Optional[date] = None
    status: BorrowStatus
    fine: float = 0.0
    fine_id: Optional[int] = None

    extension_count: int = 0
    extension_total_days: int = 0
    last_extension_days: Optional[int] = None
    last_extended_at: Optional[datetime] = None
    last_extension_reason: Optional[str] = None

    extension_request_status: ExtensionRequestStatus = ExtensionRequestStatus.NONE
    extension_requested_days: Optional[int] = None
    extension_requested_at: Optional[datetime] = None
    extension_requested_reason: Optional[str] = None
    extension_decided_at: Optional[datetime] = None
    extension_decided_by: Optional[int] = None
    extension_decision_note: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value):
        return normalize_status(value)

    @field_validator("extension_request_status", mode="before")
    @classmethod
    def _extension_status(cls, value):
        return normalize_extension_status(value)


class RecordEnvelope(CamelModel):
    ok: bool = True
    record: BorrowRecord
    message: Optional[str] = None


class RecordList(CamelModel):
    ok: bool = True
    records: List[BorrowRecord] = []


class FineUpdate(CamelModel):
    status: Optional[FineStatus] = None
    amount: Optional[float] = None
    reason: Optional[str] = Field(None, max_length=500)


class Fine(CamelModel):
    id: int
    user_id: int
    borrow_record_id: Optional[int] = None
    damage_report_id: Optional[int] = None
    amount: float
    status: FineStatus
    reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    student_name: Optional[str] = None
    student_email: Optional[str] = None
    student_id: Optional[str] = None
    book_id: Optional[int] = None
    book_title: Optional[str] = None
    borrow_status: Optional[BorrowStatus] = None
    borrow_due_date: Optional[date] = None
    borrow_return_date: Optional[date] = None

    @field_validator("borrow_status", mode="before")
    @classmethod
    def _legacy_borrow_status(cls, value):
        return None if value is None else normalize_status(value)


class FineEnvelope(CamelModel):
    ok: bool = True
    fine: Fine
    message: Optional[str] = None


class FineList(CamelModel):
    ok: bool = True
    fines: List[Fine] = []


class FineProof(CamelModel):
    id: int
    fine_id: int
    url: str
    kind: Optional[str] = None
    content_type: Optional[str] = None
    uploaded_by: Optional[int] = None
    uploaded_at: datetime


class ProofList(CamelModel):
    ok: bool = True
    proofs: List[FineProof] = []


class DamageReportUpdate(CamelModel):
    status: Optional[DamageStatus] = None
    severity: Optional[DamageSeverity] = None
    fee: Optional[float] = None
    notes: Optional[str] = Field(None, max_length=1000)


class DamageReport(CamelModel):
    id: int
    user_id: int
    student_name: Optional[str] = None
    student_email: Optional[str] = None
    student_id: Optional[str] = None
    book_id: int
    book_title: Optional[str] = None
    damage_type: str
    severity: DamageSeverity
    fee: float = 0.0
    status: DamageStatus
    reported_at: datetime
    notes: Optional[str] = None
    photo_urls: List[str] = []
    fine_id: Optional[int] = None


class DamageReportEnvelope(CamelModel):
    ok: bool = True
    report: DamageReport
    message: Optional[str] = None


class DamageReportList(CamelModel):
    ok: bool = True
    reports: List[DamageReport] = []
