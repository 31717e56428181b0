"""
Borrow record lifecycle rules.

This module is the single source of truth for what may happen to a borrow
record, a fine or a damage report, and who may make it happen. It has no
I/O: the server applies these functions to ORM objects before committing,
and the client runs the same checks against the last record it fetched so
that obviously illegal actions are refused before any request is sent.

Records are duck-typed: any object exposing the snake_case attributes of
``bookhive.models.BorrowRecord`` (or ``bookhive.models.Fine``) works, which
includes the pydantic DTOs returned by the client.

Borrow states:

    pending_pickup -> borrowed -> pending_return -> returned
                         ^              |
                         +--------------+   (staff rejects the return)

    borrowed -> returned                    (staff finalizes directly)
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Union

from bookhive import config
from bookhive.errors import (
    AuthorizationError,
    ExtensionStateError,
    StateConflictError,
    ValidationError,
)


class Role(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    OTHER = "other"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.LIBRARIAN, Role.ADMIN})


class BorrowStatus(str, Enum):
    PENDING_PICKUP = "pending_pickup"
    BORROWED = "borrowed"
    PENDING_RETURN = "pending_return"
    RETURNED = "returned"


# Older records were written with "pending" for a requested return.
LEGACY_PENDING = "pending"

ACTIVE_STATUSES = frozenset(
    {BorrowStatus.PENDING_PICKUP, BorrowStatus.BORROWED, BorrowStatus.PENDING_RETURN}
)


class ExtensionRequestStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPROVED = "approved"
    DISAPPROVED = "disapproved"


class FineStatus(str, Enum):
    ACTIVE = "active"
    PENDING_VERIFICATION = "pending_verification"
    PAID = "paid"
    CANCELLED = "cancelled"


TERMINAL_FINE_STATUSES = frozenset({FineStatus.PAID, FineStatus.CANCELLED})

CENT = Decimal("0.01")


def _raw(value) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value or "").strip().lower()


def normalize_role(raw) -> Role:
    """Map a stored role string to a Role, defaulting to student."""
    try:
        return Role(_raw(raw))
    except ValueError:
        return Role.STUDENT


def normalize_status(raw) -> BorrowStatus:
    value = _raw(raw)
    if value == LEGACY_PENDING:
        return BorrowStatus.PENDING_RETURN
    try:
        return BorrowStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown borrow status '{raw}'.") from None


def normalize_extension_status(raw) -> ExtensionRequestStatus:
    try:
        return ExtensionRequestStatus(_raw(raw) or ExtensionRequestStatus.NONE.value)
    except ValueError:
        raise ValidationError(f"Unknown extension request status '{raw}'.") from None


def normalize_fine_status(raw) -> FineStatus:
    try:
        return FineStatus(_raw(raw))
    except ValueError:
        raise ValidationError(f"Unknown fine status '{raw}'.") from None


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def require_staff(actor: Actor, action: str = "perform this action"):
    if not actor.is_staff:
        raise AuthorizationError(f"Only librarians and admins can {action}.")


# ---------------------------------------------------------------------------
# Borrow transitions
# ---------------------------------------------------------------------------

STAFF = "staff"
OWNER = "owner"  # the record owner, or staff


@dataclass(frozen=True)
class Transition:
    source: BorrowStatus
    target: BorrowStatus
    name: str
    allowed: str


BORROW_TRANSITIONS = {
    (t.source, t.target): t
    for t in (
        Transition(BorrowStatus.PENDING_PICKUP, BorrowStatus.BORROWED, "confirm pickup", STAFF),
        Transition(BorrowStatus.BORROWED, BorrowStatus.PENDING_RETURN, "request a return", OWNER),
        Transition(BorrowStatus.PENDING_RETURN, BorrowStatus.BORROWED, "reject a return", STAFF),
        Transition(BorrowStatus.PENDING_RETURN, BorrowStatus.RETURNED, "finalize a return", STAFF),
        Transition(BorrowStatus.BORROWED, BorrowStatus.RETURNED, "finalize a return", STAFF),
    )
}


def return_request_message(status) -> str:
    """Explain why a return request is not needed for a record in ``status``."""
    status = normalize_status(status)
    if status is BorrowStatus.PENDING_RETURN:
        return "This book already has a pending return request."
    if status is BorrowStatus.PENDING_PICKUP:
        return "This book is still pending pickup. Please get the book from the librarian first."
    if status is BorrowStatus.RETURNED:
        return "This book is already marked as returned."
    return "A return can be requested for this book."


def ensure_active(record):
    if normalize_status(record.status) is BorrowStatus.RETURNED:
        raise StateConflictError("This borrow record is already returned.")


def _authorize(transition: Transition, actor: Actor, owner_id):
    if actor.is_staff:
        return
    if transition.allowed == OWNER and actor.id == owner_id:
        return
    if transition.allowed == OWNER:
        raise AuthorizationError("You can only request a return for your own borrow records.")
    raise AuthorizationError(f"Only librarians and admins can {transition.name}.")


def check_transition(current, target, actor: Actor, owner_id) -> Transition:
    """Return the transition from ``current`` to ``target`` if ``actor`` may take it.

    State is checked before permissions, so a stale request is reported as a
    conflict whoever sends it.
    """
    current = normalize_status(current)
    target = normalize_status(target)

    if target is BorrowStatus.PENDING_RETURN and current is not BorrowStatus.BORROWED:
        raise StateConflictError(return_request_message(current))
    if current is BorrowStatus.RETURNED:
        raise StateConflictError("This borrow record is already returned.")

    transition = BORROW_TRANSITIONS.get((current, target))
    if transition is None:
        raise StateConflictError(
            f"Cannot move a borrow record from '{current.value}' to '{target.value}'."
        )
    _authorize(transition, actor, owner_id)
    return transition


def ensure_expected_status(record, expected):
    """Compare-and-swap guard: the caller acted on a record in ``expected``."""
    if expected is None:
        return
    current = normalize_status(record.status)
    expected = normalize_status(expected)
    if current is not expected:
        raise StateConflictError(
            f"This record is now '{current.value}', not '{expected.value}'. "
            "Refresh and try again."
        )


def transition(record, target, actor: Actor, expected=None) -> Transition:
    """Move ``record`` to ``target`` (not for returns, see ``finalize_return``).

    ``expected`` is the status the caller saw; it disambiguates transitions
    that share a target (confirm pickup and reject return both lead to
    ``borrowed``).
    """
    target = normalize_status(target)
    if target is BorrowStatus.RETURNED:
        raise ValidationError("Use finalize_return to mark a record as returned.")
    step = check_transition(record.status, target, actor, record.user_id)
    ensure_expected_status(record, expected)
    record.status = target.value
    return step


def opening_status(actor: Actor, self_service: bool) -> BorrowStatus:
    if self_service:
        return BorrowStatus.PENDING_PICKUP
    require_staff(actor, "create borrow records for other users")
    return BorrowStatus.BORROWED


def shift_date(value: date, days: int) -> date:
    """``value + days``, reported as a ValidationError past the calendar's end."""
    try:
        return value + timedelta(days=days)
    except OverflowError:
        raise ValidationError("The resulting date is out of range.") from None


def compute_due_date(borrow_date: date, loan_days: int) -> date:
    if loan_days is None or loan_days < 1:
        raise ValidationError("Loan duration must be at least one day.")
    return shift_date(borrow_date, loan_days)


def validate_loan_dates(borrow_date: date, due_date: date):
    if due_date < borrow_date:
        raise ValidationError("Due date cannot be earlier than the borrow date.")


RETURNED_BEFORE_DECISION = "Book returned before the extension request was decided."


def finalize_return(
    record,
    actor: Actor,
    return_date: date,
    fine=None,
    daily_rate: Decimal = Decimal("0"),
    expected=None,
    now: Optional[datetime] = None,
) -> Decimal:
    """Mark ``record`` returned and settle its final fine.

    When ``fine`` is None the overdue fine is computed against the return
    date. A still pending extension request is closed as disapproved, since
    nothing can be decided on a returned record. Returns the final fine.
    """
    check_transition(record.status, BorrowStatus.RETURNED, actor, record.user_id)
    ensure_expected_status(record, expected)
    if return_date < record.borrow_date:
        raise ValidationError("Return date cannot be earlier than the borrow date.")

    if fine is None:
        amount = compute_overdue_fine(record.due_date, return_date, daily_rate)
    else:
        amount = normalize_amount(fine, "Fine")

    record.status = BorrowStatus.RETURNED.value
    record.return_date = return_date
    record.fine = amount

    if has_pending_extension(record):
        record.extension_request_status = ExtensionRequestStatus.DISAPPROVED.value
        record.extension_decided_at = now or datetime.combine(return_date, datetime.min.time())
        record.extension_decided_by = actor.id
        record.extension_decision_note = RETURNED_BEFORE_DECISION
    return amount


def update_due_date(record, actor: Actor, new_due_date: date):
    require_staff(actor, "change due dates")
    ensure_active(record)
    validate_loan_dates(record.borrow_date, new_due_date)
    record.due_date = new_due_date


# ---------------------------------------------------------------------------
# Fines
# ---------------------------------------------------------------------------


def normalize_amount(value, label: str = "Amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number.")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be a number.") from None
    if not amount.is_finite():
        raise ValidationError(f"{label} must be a number.")
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative.")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{label} is too large.") from None


def overdue_days(due_date: date, as_of: date) -> int:
    return max(0, (as_of - due_date).days)


def compute_overdue_fine(due_date: date, as_of: date, daily_rate: Decimal) -> Decimal:
    days = overdue_days(due_date, as_of)
    return (Decimal(daily_rate) * days).quantize(CENT, rounding=ROUND_HALF_UP)


def refresh_fine(record, today: date, daily_rate: Decimal) -> bool:
    """Recompute the accrued fine of an active record. Returns True if it changed."""
    if normalize_status(record.status) not in ACTIVE_STATUSES:
        return False
    amount = compute_overdue_fine(record.due_date, today, daily_rate)
    current = normalize_amount(record.fine or 0, "Fine")
    if current == amount:
        return False
    record.fine = amount
    return True


FINE_TRANSITIONS = {
    (FineStatus.ACTIVE, FineStatus.PENDING_VERIFICATION): OWNER,
    (FineStatus.PENDING_VERIFICATION, FineStatus.PAID): STAFF,
    (FineStatus.PENDING_VERIFICATION, FineStatus.ACTIVE): STAFF,
    (FineStatus.ACTIVE, FineStatus.PAID): STAFF,
    (FineStatus.ACTIVE, FineStatus.CANCELLED): STAFF,
}


def ensure_fine_open(fine):
    status = normalize_fine_status(fine.status)
    if status in TERMINAL_FINE_STATUSES:
        raise StateConflictError(f"This fine is already {status.value}.")


def check_fine_transition(current, target, actor: Actor, owner_id) -> FineStatus:
    current = normalize_fine_status(current)
    target = normalize_fine_status(target)
    if current in TERMINAL_FINE_STATUSES:
        raise StateConflictError(f"This fine is already {current.value}.")

    allowed = FINE_TRANSITIONS.get((current, target))
    if allowed is None:
        raise StateConflictError(
            f"Cannot move a fine from '{current.value}' to '{target.value}'."
        )
    if allowed == OWNER:
        if actor.id != owner_id:
            raise AuthorizationError("You can only submit payment for your own fines.")
    elif not actor.is_staff:
        raise AuthorizationError("Only librarians and admins can settle fines.")
    return target


def apply_fine_status(fine, target, actor: Actor, now: datetime) -> FineStatus:
    target = check_fine_transition(fine.status, target, actor, fine.user_id)
    fine.status = target.value
    fine.resolved_at = now if target in TERMINAL_FINE_STATUSES else None
    return target


# ---------------------------------------------------------------------------
# Book stock
# ---------------------------------------------------------------------------


def resize_stock(total_copies: int, available_copies: int, new_total: int) -> int:
    """
    Available copies after changing a title's total to ``new_total``.

    Copies that are lent out stay lent out, so the total cannot drop below
    their number.
    """
    if new_total < 0:
        raise ValidationError("Total copies cannot be negative.")
    lent_out = max(0, (total_copies or 0) - (available_copies or 0))
    if new_total < lent_out:
        raise StateConflictError(
            f"{lent_out} copies are lent out; the total cannot go below that."
        )
    return new_total - lent_out


# ---------------------------------------------------------------------------
# Damage reports
# ---------------------------------------------------------------------------


class DamageSeverity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"


class DamageStatus(str, Enum):
    PENDING = "pending"
    ASSESSED = "assessed"
    PAID = "paid"


# pending: reported, not yet looked at; assessed: fee decided; paid: settled.
DAMAGE_TRANSITIONS = frozenset(
    {
        (DamageStatus.PENDING, DamageStatus.ASSESSED),
        (DamageStatus.ASSESSED, DamageStatus.PENDING),
        (DamageStatus.ASSESSED, DamageStatus.PAID),
    }
)


def normalize_damage_severity(raw) -> DamageSeverity:
    try:
        return DamageSeverity(_raw(raw))
    except ValueError:
        raise ValidationError(
            f"Unknown severity '{raw}'. Use minor, moderate or major."
        ) from None


def normalize_damage_status(raw) -> DamageStatus:
    try:
        return DamageStatus(_raw(raw))
    except ValueError:
        raise ValidationError(f"Unknown damage report status '{raw}'.") from None


def ensure_damage_open(report):
    if normalize_damage_status(report.status) is DamageStatus.PAID:
        raise StateConflictError("This damage report is already paid.")


def check_damage_transition(current, target, actor: Actor) -> DamageStatus:
    current = normalize_damage_status(current)
    target = normalize_damage_status(target)
    if current is DamageStatus.PAID:
        raise StateConflictError("This damage report is already paid.")
    if (current, target) not in DAMAGE_TRANSITIONS:
        raise StateConflictError(
            f"Cannot move a damage report from '{current.value}' to '{target.value}'."
        )
    require_staff(actor, "assess damage reports")
    return target


# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Immediate:
    """Staff extensions change the due date straight away."""

    kind: str = "immediate"


@dataclass(frozen=True)
class RequiresApproval:
    """Other roles file a request that staff approve or disapprove."""

    kind: str = "requires_approval"


ExtensionPolicy = Union[Immediate, RequiresApproval]


def extension_policy(role) -> ExtensionPolicy:
    if normalize_role(role) in STAFF_ROLES:
        return Immediate()
    return RequiresApproval()


def normalize_extension_days(days) -> int:
    """Whole number of days to extend by, truncated toward zero."""
    if isinstance(days, bool) or not isinstance(days, (int, float, Decimal)):
        raise ValidationError("Extension days must be a number.")
    if isinstance(days, float) and not math.isfinite(days):
        raise ValidationError("Extension days must be a finite number.")
    if isinstance(days, Decimal) and not days.is_finite():
        raise ValidationError("Extension days must be a finite number.")
    whole = int(days)
    if whole < 1:
        raise ValidationError("Extension must be at least 1 day.")
    if whole > config.MAX_EXTENSION_DAYS:
        raise ValidationError(
            f"Extension cannot be longer than {config.MAX_EXTENSION_DAYS} days."
        )
    return whole


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def has_pending_extension(record) -> bool:
    return (
        normalize_extension_status(record.extension_request_status)
        is ExtensionRequestStatus.PENDING
    )


def ensure_pending_extension(record):
    if not has_pending_extension(record):
        current = normalize_extension_status(record.extension_request_status)
        raise ExtensionStateError(
            f"There is no pending extension request to decide (current: {current.value})."
        )


def ensure_can_request_extension(record, actor: Actor):
    status = normalize_status(record.status)
    if status is BorrowStatus.RETURNED:
        raise StateConflictError("This record is already returned.")
    if not actor.is_staff:
        if actor.id != record.user_id:
            raise AuthorizationError("You can only extend your own borrow records.")
        if status is not BorrowStatus.BORROWED:
            raise StateConflictError("Only records with status 'Borrowed' can be extended.")
    if has_pending_extension(record):
        raise ExtensionStateError(
            "An extension request is already pending for this record."
        )


def apply_extension(record, days: int, now: datetime, reason: Optional[str] = None):
    new_due_date = shift_date(record.due_date, days)
    record.extension_count = (record.extension_count or 0) + 1
    record.extension_total_days = (record.extension_total_days or 0) + days
    record.due_date = new_due_date
    record.last_extension_days = days
    record.last_extended_at = now
    record.last_extension_reason = reason


def request_extension(
    record, actor: Actor, days, now: datetime, reason: Optional[str] = None
) -> ExtensionPolicy:
    days = normalize_extension_days(days)
    ensure_can_request_extension(record, actor)
    reason = _clean_text(reason)

    policy = extension_policy(actor.role)
    if isinstance(policy, Immediate):
        apply_extension(record, days, now, reason)
        record.extension_request_status = ExtensionRequestStatus.NONE.value
    else:
        record.extension_request_status = ExtensionRequestStatus.PENDING.value
        record.extension_requested_days = days
        record.extension_requested_at = now
        record.extension_requested_reason = reason
    return policy


def decide_extension(
    record, actor: Actor, approve: bool, now: datetime, note: Optional[str] = None
) -> ExtensionRequestStatus:
    require_staff(actor, "decide on extension requests")
    ensure_active(record)
    ensure_pending_extension(record)

    if approve:
        apply_extension(
            record,
            record.extension_requested_days,
            now,
            record.extension_requested_reason,
        )
        outcome = ExtensionRequestStatus.APPROVED
    else:
        outcome = ExtensionRequestStatus.DISAPPROVED

    record.extension_request_status = outcome.value
    record.extension_decided_at = now
    record.extension_decided_by = actor.id
    record.extension_decision_note = _clean_text(note)
    return outcome
