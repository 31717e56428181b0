"""Damage report endpoints.

Students (or staff on their behalf) report a damaged book with up to three
photos. Librarians assess the report, set a fee and eventually mark it paid;
the fee is carried by a regular fine so it shows up with the user's other
fines.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.orm import Session

from bookhive import lifecycle, models, schemas
from bookhive.auth import get_actor, require_staff
from bookhive.clock import get_now
from bookhive.database import commit_or_conflict, get_db
from bookhive.errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from bookhive.fines import sync_fine_for_damage_report
from bookhive.lifecycle import Actor, DamageStatus, FineStatus
from bookhive.uploads import path_for_url, read_uploads, remove_files, write_upload


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/damage-reports", tags=["damage-reports"])

PHOTO_SUBDIR = "damage-photos"
DAMAGE_CONFLICT = "This damage report was changed by someone else. Refresh and try again."


def _get_report(db: Session, report_id: int) -> models.DamageReport:
    report = db.get(models.DamageReport, report_id)
    if report is None:
        raise NotFoundError(f"Damage report with id {report_id} not found.")
    return report


def _commit_with_files(db: Session, written: List[Path]):
    try:
        commit_or_conflict(db, DAMAGE_CONFLICT)
    except StateConflictError:
        remove_files(written)
        raise


@router.get("", response_model=schemas.DamageReportList)
async def list_damage_reports(
    user_id: Optional[int] = Query(None, alias="userId"),
    status_filter: Optional[DamageStatus] = Query(None, alias="status"),
    actor: Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    query = db.query(models.DamageReport)
    if user_id is not None:
        query = query.filter(models.DamageReport.user_id == user_id)
    if status_filter is not None:
        query = query.filter(models.DamageReport.status == status_filter.value)
    reports = query.order_by(models.DamageReport.id.desc()).all()
    return {"ok": True, "reports": reports}


@router.get("/my", response_model=schemas.DamageReportList)
async def list_my_damage_reports(
    actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    reports = (
        db.query(models.DamageReport)
        .filter(models.DamageReport.user_id == actor.id)
        .order_by(models.DamageReport.id.desc())
        .all()
    )
    return {"ok": True, "reports": reports}


@router.post(
    "",
    response_model=schemas.DamageReportEnvelope,
    status_code=status.HTTP_201_CREATED,
)
async def create_damage_report(
    book_id: int = Form(..., alias="bookId"),
    damage_type: str = Form(..., alias="damageType"),
    severity: str = Form(...),
    notes: Optional[str] = Form(None),
    fee: Optional[float] = Form(None),
    user_id: Optional[int] = Form(None, alias="userId"),
    photos: Optional[List[UploadFile]] = File(None),
    actor: Actor = Depends(get_actor),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Report a damaged book (multipart form).

    Business Logic:
    - Students report for themselves; staff may name another user (userId)
      and propose a fee up front
    - Every report starts pending; the fee only becomes a fine once a
      librarian assesses the report
    - Photos must be images, at most three per report
    """
    owner_id = actor.id if user_id is None else user_id
    if not actor.is_staff:
        if owner_id != actor.id:
            raise AuthorizationError("You can only report damage for yourself.")
        if fee is not None:
            raise AuthorizationError("Only librarians and admins can set a damage fee.")

    if db.get(models.User, owner_id) is None:
        raise NotFoundError(f"User with id {owner_id} not found.")
    book = db.get(models.Book, book_id)
    if book is None:
        raise NotFoundError(f"Book with id {book_id} not found.")

    damage_type = damage_type.strip()
    if not damage_type:
        raise ValidationError("Describe the type of damage.")
    severity = lifecycle.normalize_damage_severity(severity)
    amount = lifecycle.normalize_amount(fee if fee is not None else 0, "Fee")
    accepted = await read_uploads(photos or [], allow_pdf=False)

    report = models.DamageReport(
        user_id=owner_id,
        book_id=book.id,
        damage_type=damage_type,
        severity=severity.value,
        fee=amount,
        status=DamageStatus.PENDING.value,
        notes=(notes or "").strip() or None,
        reported_at=now,
    )
    db.add(report)
    db.flush()

    written = []
    for name, content_type, data in accepted:
        url, path = write_upload(PHOTO_SUBDIR, report.id, name, data)
        written.append(path)
        db.add(
            models.DamagePhoto(
                report=report, url=url, content_type=content_type, uploaded_at=now
            )
        )

    _commit_with_files(db, written)
    db.refresh(report)
    logger.info(
        "Damage report %s filed for book %s (user %s) by user %s",
        report.id, book.id, owner_id, actor.id,
    )
    return {"ok": True, "report": report, "message": "Damage report submitted."}


@router.patch("/{report_id}", response_model=schemas.DamageReportEnvelope)
async def update_damage_report(
    report_id: int,
    payload: schemas.DamageReportUpdate,
    actor: Actor = Depends(require_staff),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Assess a damage report (librarian/admin).

    Internal Working:
    1. Paid reports are final: any change is a conflict
    2. Severity, fee and notes are applied; status changes follow
       pending <-> assessed -> paid
    3. The report's fine is synced: created or updated when assessed with a
       fee, cancelled when the fee goes away, paid with the report
    4. The commit is a compare-and-swap on the report's version
    """
    report = _get_report(db, report_id)
    lifecycle.ensure_damage_open(report)

    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update.")

    if payload.severity is not None:
        report.severity = payload.severity.value
    if payload.fee is not None:
        report.fee = lifecycle.normalize_amount(payload.fee, "Fee")
    if "notes" in changes:
        report.notes = (payload.notes or "").strip() or None

    source = lifecycle.normalize_damage_status(report.status)
    if payload.status is not None and payload.status is not source:
        report.status = lifecycle.check_damage_transition(source, payload.status, actor).value
        logger.info(
            "Damage report %s: %s -> %s by user %s",
            report_id, source.value, payload.status.value, actor.id,
        )

    sync_fine_for_damage_report(db, report, now)
    commit_or_conflict(db, DAMAGE_CONFLICT)
    db.refresh(report)
    return {"ok": True, "report": report}


@router.delete("/{report_id}")
async def delete_damage_report(
    report_id: int,
    actor: Actor = Depends(require_staff),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
):
    """
    Delete a damage report and its photos (librarian/admin).

    An open fine for the report is cancelled and kept for the record; a
    report whose fine is already paid cannot be deleted.
    """
    report = _get_report(db, report_id)
    fine = report.fine_record
    if fine is not None:
        fine_status = lifecycle.normalize_fine_status(fine.status)
        if fine_status is FineStatus.PAID:
            raise StateConflictError("The fee for this report is already paid.")
        if fine_status is not FineStatus.CANCELLED:
            fine.status = FineStatus.CANCELLED.value
            fine.resolved_at = now
            fine.updated_at = now
        fine.damage_report = None

    photo_paths = [path_for_url(url) for url in report.photo_urls]
    db.delete(report)
    commit_or_conflict(db, DAMAGE_CONFLICT)
    remove_files(photo_paths)
    logger.info("Damage report %s deleted by user %s", report_id, actor.id)
    return {"ok": True, "message": "Damage report deleted."}
