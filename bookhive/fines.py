"""Fine and payment-proof endpoints.

Fines are created by the borrow lifecycle when a loan is returned with a
positive fine; students then submit proof of payment and librarians verify
it, waive the fine or collect it over the counter.
"""

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.orm import Session

from bookhive import lifecycle, models, schemas
from bookhive.auth import get_actor, require_staff
from bookhive.clock import get_now
from bookhive.database import commit_or_conflict, get_db
from bookhive.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from bookhive.lifecycle import Actor, DamageStatus, FineStatus
from bookhive.uploads import read_uploads, remove_files, write_upload


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fines", tags=["fines"])

PROOF_SUBDIR = "fine-proofs"
FINE_CONFLICT = "This fine was changed by someone else. Refresh and try again."


def sync_fine_for_record(db: Session, record: models.BorrowRecord, amount: Decimal):
    """
    Keep the fine record of a returned loan in line with its final fine.

    - No fine record and a positive amount: create an active one
    - Active fine record: take over the new amount
    - Anything else (settled or under review): leave it alone
    """
    fine = record.fine_record
    if fine is None:
        if amount <= 0:
            return None
        title = record.book_title or f"book #{record.book_id}"
        fine = models.Fine(
            user_id=record.user_id,
            borrow_record=record,
            amount=amount,
            status=FineStatus.ACTIVE.value,
            reason=f"Fine for borrow record #{record.id} ({title})",
        )
        db.add(fine)
        return fine

    if lifecycle.normalize_fine_status(fine.status) is FineStatus.ACTIVE:
        fine.amount = amount
    return fine


def sync_fine_for_damage_report(db: Session, report: models.DamageReport, now: datetime):
    """
    Keep the fine of a damage report in line with its assessment.

    - Assessed with a positive fee: the fine is active for that fee (a fine
      cancelled by an earlier assessment is reopened)
    - Report paid: the fine is paid too
    - Back to pending, or no fee: an open fine is cancelled
    - A paid fine is never touched
    """
    fine = report.fine_record
    status = lifecycle.normalize_damage_status(report.status)
    fee = lifecycle.normalize_amount(report.fee or 0)
    owes = status is not DamageStatus.PENDING and fee > 0

    if fine is None:
        if not owes:
            return None
        paid = status is DamageStatus.PAID
        fine = models.Fine(
            user_id=report.user_id,
            damage_report=report,
            amount=fee,
            status=(FineStatus.PAID if paid else FineStatus.ACTIVE).value,
            resolved_at=now if paid else None,
            reason=f"Damage fee for report #{report.id} ({report.book_title or 'book'})",
        )
        db.add(fine)
        return fine

    current = lifecycle.normalize_fine_status(fine.status)
    if current is FineStatus.PAID:
        return fine

    if not owes:
        if current is not FineStatus.CANCELLED:
            fine.status = FineStatus.CANCELLED.value
            fine.resolved_at = now
    elif status is DamageStatus.PAID:
        fine.amount = fee
        fine.status = FineStatus.PAID.value
        fine.resolved_at = now
    else:
        fine.amount = fee
        if current is FineStatus.CANCELLED:
            fine.status = FineStatus.ACTIVE.value
            fine.resolved_at = None
    fine.updated_at = now
    return fine


def _get_fine(db: Session, fine_id: int) -> models.Fine:
    fine = db.get(models.Fine, fine_id)
    if fine is None:
        raise NotFoundError(f"Fine with id {fine_id} not found.")
    return fine


def _ensure_visible(fine: models.Fine, actor: Actor):
    if not actor.is_staff and fine.user_id != actor.id:
        raise AuthorizationError("You can only access your own fines.")


async def _store_proofs(
    db: Session,
    fine: models.Fine,
    uploads: List[UploadFile],
    kind: Optional[str],
    actor: Actor,
    now: datetime,
):
    """
    Validate and write uploaded proof files, then attach them to ``fine``.

    Every file is checked before anything is written, so a rejected upload
    leaves no partial state behind.

    Returns:
        (proofs, written paths)
    """
    accepted = await read_uploads(uploads)

    kind = (kind or "").strip() or None
    proofs, written = [], []
    for name, content_type, data in accepted:
        url, path = write_upload(PROOF_SUBDIR, fine.id, name, data)
        written.append(path)

        proof = models.FineProof(
            fine=fine,
            url=url,
            kind=kind,
            content_type=content_type,
            uploaded_by=actor.id,
            uploaded_at=now,
        )
        db.add(proof)
        proofs.append(proof)
    return proofs, written


def _commit_with_files(db: Session, written: List[Path]):
    try:
        commit_or_conflict(db, FINE_CONFLICT)
    except StateConflictError:
        remove_files(written)
        raise


@router.get("", response_model=schemas.FineList)
async def list_fines(
    user_id: Optional[int] = Query(None, alias="userId"),
    status_filter: Optional[FineStatus] = Query(None, alias="status"),
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    """
    List fines (librarian/admin), optionally for one user and/or one status.

    Returns:
        Fines, newest first
    """
    query = db.query(models.Fine)
    if user_id is not None:
        query = query.filter(models.Fine.user_id == user_id)
    if status_filter is not None:
        query = query.filter(models.Fine.status == status_filter.value)
    fines = query.order_by(models.Fine.id.desc()).all()
    return {"ok": True, "fines": fines}


@router.get("/my", response_model=schemas.FineList)
async def list_my_fines(actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    fines = (
        db.query(models.Fine)
        .filter(models.Fine.user_id == actor.id)
        .order_by(models.Fine.id.desc())
        .all()
    )
    return {"ok": True, "fines": fines}


@router.patch("/{fine_id}", response_model=schemas.FineEnvelope)
async def update_fine(
    fine_id: int,
    payload: schemas.FineUpdate,
    actor: Actor = Depends(require_staff),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Update a fine's status, amount or reason (librarian/admin).

    Business Logic:
    - Paid and cancelled fines are final: any change is a conflict
    - Status changes follow the fine transitions (confirm or bounce back a
      submitted payment, collect over the counter, waive)
    - Amounts must be non-negative and are kept to 2 decimal places
    - Confirming payment of a damage fee marks the assessed report paid
    """
    fine = _get_fine(db, fine_id)
    lifecycle.ensure_fine_open(fine)

    if payload.amount is not None:
        fine.amount = lifecycle.normalize_amount(payload.amount)
    if payload.reason is not None:
        fine.reason = payload.reason.strip() or None

    source = lifecycle.normalize_fine_status(fine.status)
    if payload.status is not None and payload.status is not source:
        lifecycle.apply_fine_status(fine, payload.status, actor, now)
        report = fine.damage_report
        if (
            payload.status is FineStatus.PAID
            and report is not None
            and lifecycle.normalize_damage_status(report.status) is DamageStatus.ASSESSED
        ):
            report.status = DamageStatus.PAID.value
        logger.info(
            "Fine %s: %s -> %s by user %s",
            fine_id, source.value, payload.status.value, actor.id,
        )

    fine.updated_at = now
    commit_or_conflict(db, FINE_CONFLICT)
    db.refresh(fine)
    return {"ok": True, "fine": fine}


@router.post("/{fine_id}/pay", response_model=schemas.FineEnvelope)
async def pay_fine(
    fine_id: int,
    proofs: Optional[List[UploadFile]] = File(None),
    kind: Optional[str] = Form(None),
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Student payment: attach proof and send the fine for verification.

    Internal Working:
    1. The transition active -> pending_verification is checked first, so
       nothing is written for a fine that cannot be paid online
    2. Proof files are validated and stored; at least one is required
    3. The fine moves to pending_verification; a lost compare-and-swap
       removes the files written by this request
    """
    fine = _get_fine(db, fine_id)
    lifecycle.check_fine_transition(
        fine.status, FineStatus.PENDING_VERIFICATION, actor, fine.user_id
    )
    if not proofs:
        raise ValidationError("Attach at least one proof of payment.")

    _, written = await _store_proofs(db, fine, proofs, kind, actor, now)
    lifecycle.apply_fine_status(fine, FineStatus.PENDING_VERIFICATION, actor, now)
    fine.updated_at = now
    _commit_with_files(db, written)
    logger.info("Fine %s submitted for verification by user %s", fine_id, actor.id)

    db.refresh(fine)
    return {
        "ok": True,
        "fine": fine,
        "message": "Payment submitted. A librarian will verify your proof of payment.",
    }


@router.post(
    "/{fine_id}/proofs",
    response_model=schemas.ProofList,
    status_code=status.HTTP_201_CREATED,
)
async def upload_fine_proofs(
    fine_id: int,
    files: List[UploadFile] = File(...),
    kind: Optional[str] = Form(None),
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    fine = _get_fine(db, fine_id)
    _ensure_visible(fine, actor)
    lifecycle.ensure_fine_open(fine)

    proofs, written = await _store_proofs(db, fine, files, kind, actor, now)
    _commit_with_files(db, written)
    for proof in proofs:
        db.refresh(proof)
    return {"ok": True, "proofs": proofs}


@router.get("/{fine_id}/proofs", response_model=schemas.ProofList)
async def list_fine_proofs(
    fine_id: int,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    fine = _get_fine(db, fine_id)
    _ensure_visible(fine, actor)
    return {"ok": True, "proofs": fine.proofs}
