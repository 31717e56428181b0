from datetime import datetime
from bookhive import config
from bookhive.database import Base
from sqlalchemy.orm import relationship
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Date, Numeric


class User(Base):
    """
    A library account.

    ``role`` holds one of the lifecycle roles (student, faculty, other,
    librarian, admin). Unknown values are treated as student.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    student_id = Column(String, nullable=True)
    role = Column(String(20), nullable=False, default="student")
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    sessions = relationship(
        "SessionToken",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    borrow_records = relationship(
        "BorrowRecord",
        back_populates="user",
        foreign_keys="BorrowRecord.user_id",
    )


class SessionToken(Base):
    """Opaque token stored in the session cookie."""

    __tablename__ = "session_tokens"

    token = Column(String(64), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    user = relationship("User", back_populates="sessions")


class Book(Base):
    """
    A title in the catalogue.

    Business Logic:
    - loan_days is the loan duration used for self-service borrows
    - available_copies is decremented when a loan opens and incremented when
      it is returned, never above total_copies
    - version guards available_copies the same way it guards borrow records
    """

    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False)
    isbn = Column(String, unique=True, nullable=True, index=True)
    loan_days = Column(Integer, nullable=False, default=config.DEFAULT_LOAN_DAYS)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    version = Column(Integer, nullable=False)

    borrow_records = relationship("BorrowRecord", back_populates="book")
    damage_reports = relationship("DamageReport", back_populates="book")

    __mapper_args__ = {"version_id_col": version}


class BorrowRecord(Base):
    """
    One loan of one copy of one book to one user.

    Relationships:
    - Many records belong to one user and one book (many-to-one)
    - A record has at most one fine (one-to-one through Fine.borrow_record_id)

    Internal Working:
    - ``version`` is the mapper's version_id_col: every UPDATE is guarded by
      the version that was loaded, which turns concurrent transitions on the
      same record into a StaleDataError for all but the first writer
    - ``fine`` is Numeric(10, 2) read back as float for the JSON layer
    """

    __tablename__ = "borrow_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)

    borrow_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="pending_pickup", index=True)
    fine = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)

    extension_count = Column(Integer, nullable=False, default=0)
    extension_total_days = Column(Integer, nullable=False, default=0)
    last_extension_days = Column(Integer, nullable=True)
    last_extended_at = Column(DateTime, nullable=True)
    last_extension_reason = Column(String, nullable=True)

    extension_request_status = Column(String(20), nullable=False, default="none")
    extension_requested_days = Column(Integer, nullable=True)
    extension_requested_at = Column(DateTime, nullable=True)
    extension_requested_reason = Column(String, nullable=True)
    extension_decided_at = Column(DateTime, nullable=True)
    extension_decided_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    extension_decision_note = Column(String, nullable=True)

    version = Column(Integer, nullable=False)

    user = relationship("User", back_populates="borrow_records", foreign_keys=[user_id])
    book = relationship("Book", back_populates="borrow_records")
    fine_record = relationship("Fine", back_populates="borrow_record", uselist=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def fine_id(self):
        return self.fine_record.id if self.fine_record else None

    @property
    def book_title(self):
        return self.book.title if self.book else None

    @property
    def student_name(self):
        return self.user.name if self.user else None

    @property
    def student_email(self):
        return self.user.email if self.user else None

    @property
    def student_id(self):
        return self.user.student_id if self.user else None


class Fine(Base):
    """
    Monetary penalty owed by a user for an overdue loan or a damaged book.

    Business Logic:
    - status: active, pending_verification, paid or cancelled
    - resolved_at is set when the fine reaches paid or cancelled
    - proofs are payment receipts uploaded by the student for review
    - exactly one of borrow_record_id and damage_report_id is usually set
    """

    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    borrow_record_id = Column(
        Integer, ForeignKey("borrow_records.id"), unique=True, nullable=True
    )
    damage_report_id = Column(
        Integer, ForeignKey("damage_reports.id"), unique=True, nullable=True
    )
    amount = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    status = Column(String(30), nullable=False, default="active", index=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    user = relationship("User")
    borrow_record = relationship("BorrowRecord", back_populates="fine_record")
    damage_report = relationship("DamageReport", back_populates="fine_record")
    proofs = relationship(
        "FineProof",
        back_populates="fine",
        cascade="all, delete-orphan",
        order_by="FineProof.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def student_name(self):
        return self.user.name if self.user else None

    @property
    def student_email(self):
        return self.user.email if self.user else None

    @property
    def student_id(self):
        return self.user.student_id if self.user else None

    @property
    def book_id(self):
        source = self.borrow_record or self.damage_report
        return source.book_id if source else None

    @property
    def book_title(self):
        source = self.borrow_record or self.damage_report
        return source.book_title if source else None

    @property
    def borrow_status(self):
        return self.borrow_record.status if self.borrow_record else None

    @property
    def borrow_due_date(self):
        return self.borrow_record.due_date if self.borrow_record else None

    @property
    def borrow_return_date(self):
        return self.borrow_record.return_date if self.borrow_record else None


class FineProof(Base):
    """An uploaded image or receipt backing a payment claim."""

    __tablename__ = "fine_proofs"

    id = Column(Integer, primary_key=True, index=True)
    fine_id = Column(Integer, ForeignKey("fines.id"), nullable=False, index=True)
    url = Column(String, nullable=False)
    kind = Column(String, nullable=True)
    content_type = Column(String, nullable=True)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    uploaded_at = Column(DateTime, default=datetime.now, nullable=False)

    fine = relationship("Fine", back_populates="proofs")


class DamageReport(Base):
    """
    A damaged book reported by a student or a librarian.

    Business Logic:
    - severity: minor, moderate or major
    - status: pending (reported), assessed (fee decided) or paid
    - an assessed report with a positive fee owns one fine
      (Fine.damage_report_id), kept in sync as the report changes
    - up to MAX_PROOFS_PER_UPLOAD photos are stored with the report
    """

    __tablename__ = "damage_reports"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    damage_type = Column(String, nullable=False)
    severity = Column(String(20), nullable=False, default="minor")
    fee = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)
    notes = Column(String, nullable=True)
    reported_at = Column(DateTime, default=datetime.now, nullable=False)

    version = Column(Integer, nullable=False)

    user = relationship("User")
    book = relationship("Book", back_populates="damage_reports")
    fine_record = relationship("Fine", back_populates="damage_report", uselist=False)
    photos = relationship(
        "DamagePhoto",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="DamagePhoto.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def photo_urls(self):
        return [photo.url for photo in self.photos]

    @property
    def fine_id(self):
        return self.fine_record.id if self.fine_record else None

    @property
    def book_title(self):
        return self.book.title if self.book else None

    @property
    def student_name(self):
        return self.user.name if self.user else None

    @property
    def student_email(self):
        return self.user.email if self.user else None

    @property
    def student_id(self):
        return self.user.student_id if self.user else None


class DamagePhoto(Base):
    __tablename__ = "damage_photos"

    id = Column(Integer, primary_key=True, index=True)
    report_id = Column(Integer, ForeignKey("damage_reports.id"), nullable=False, index=True)
    url = Column(String, nullable=False)
    content_type = Column(String, nullable=True)
    uploaded_at = Column(DateTime, default=datetime.now, nullable=False)

    report = relationship("DamageReport", back_populates="photos")
