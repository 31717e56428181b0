from bookhive.errors import AuthorizationError, StateConflictError, ValidationError
from bookhive.lifecycle import FineStatus

from datetime import date

import pytest


PNG = ("receipt.png", b"\x89PNG\r\n\x1a\nfake-image", "image/png")


@pytest.fixture
def returned_late(student, librarian, make_book, login, clock):
    """
    A loan due 2024-01-10 and returned on 2024-01-14.

    Returns:
        The returned record, carrying a 20.00 fine (4 days at 5.00)
    """
    book = make_book()
    libby = login(librarian)
    record = libby.create_borrow(student.id, book.id, due_date=date(2024, 1, 10))
    clock.today = date(2024, 1, 14)
    return libby.finalize_return(record.id)


@pytest.fixture
def fine(returned_late, student, login):
    return login(student).list_my_fines()[0]


def test_late_return_creates_active_fine(returned_late, student, login):
    """
    Test that finalizing an overdue loan opens a fine.

    Verifies:
    - The overdue fine is computed against the return date
    - An active fine with the same amount is linked to the record
    - The fine carries the loan details for display
    """
    assert returned_late.fine == 20.0
    assert returned_late.fine_id is not None

    fines = login(student).list_my_fines()
    assert len(fines) == 1
    fine = fines[0]
    assert fine.id == returned_late.fine_id
    assert fine.amount == 20.0
    assert fine.status is FineStatus.ACTIVE
    assert fine.borrow_record_id == returned_late.id
    assert fine.book_title == "Intro to Algorithms"
    assert fine.student_email == "alice@school.edu"
    assert fine.borrow_return_date == date(2024, 1, 14)
    assert fine.resolved_at is None


def test_on_time_return_creates_no_fine(student, librarian, make_book, login):
    book = make_book()
    libby = login(librarian)
    record = libby.create_borrow(student.id, book.id, due_date=date(2024, 1, 10))
    returned = libby.finalize_return(record.id, return_date=date(2024, 1, 9))

    assert returned.fine == 0
    assert returned.fine_id is None
    assert libby.list_fines() == []


def test_staff_list_fines_with_filters(fine, student, other_student, librarian, login):
    libby = login(librarian)
    assert [f.id for f in libby.list_fines()] == [fine.id]
    assert [f.id for f in libby.list_fines(user_id=student.id, status="active")] == [fine.id]
    assert libby.list_fines(user_id=other_student.id) == []
    assert libby.list_fines(status="paid") == []


def test_students_cannot_list_all_fines(student, login):
    with pytest.raises(AuthorizationError):
        login(student).list_fines()


def test_pay_with_proof(fine, student, login, upload_dir, clock):
    """
    Test a student paying a fine online.

    Verifies:
    - The fine moves to pending_verification
    - The proof is stored under the upload directory and listed with its URL
    """
    alice = login(student)
    envelope = alice.pay_fine(fine, proofs=[PNG], kind="bank_transfer")

    assert envelope.fine.status is FineStatus.PENDING_VERIFICATION
    assert "verify" in envelope.message

    proofs = alice.list_fine_proofs(fine.id)
    assert len(proofs) == 1
    proof = proofs[0]
    assert proof.kind == "bank_transfer"
    assert proof.content_type == "image/png"
    assert proof.url.startswith("/uploads/fine-proofs/")
    assert proof.uploaded_by == student.id

    stored = upload_dir / "fine-proofs" / proof.url.rsplit("/", 1)[-1]
    assert stored.read_bytes() == PNG[1]


def test_pay_rejects_bad_files(fine, student, login, upload_dir):
    alice = login(student)
    response = alice.http.post(
        f"/api/fines/{fine.id}/pay",
        files=[("proofs", ("notes.txt", b"hello", "text/plain"))],
    )
    assert response.status_code == 400

    response = alice.http.post(
        f"/api/fines/{fine.id}/pay",
        files=[("proofs", PNG)] * 4,
    )
    assert response.status_code == 400

    assert alice.list_my_fines()[0].status is FineStatus.ACTIVE
    assert not (upload_dir / "fine-proofs").exists() or not any((upload_dir / "fine-proofs").iterdir())


def test_only_owner_pays(fine, other_student, librarian, login):
    with pytest.raises(AuthorizationError):
        login(other_student).pay_fine(fine.id, proofs=[PNG])
    with pytest.raises(AuthorizationError):
        login(librarian).pay_fine(fine.id, proofs=[PNG])


def test_other_students_cannot_see_proofs(fine, other_student, login):
    with pytest.raises(AuthorizationError):
        login(other_student).list_fine_proofs(fine.id)


def test_upload_proofs_from_path(fine, student, login, tmp_path):
    receipt = tmp_path / "receipt.pdf"
    receipt.write_bytes(b"%PDF-1.4 receipt")

    proofs = login(student).upload_fine_proofs(fine, [receipt], kind="receipt")
    assert len(proofs) == 1
    assert proofs[0].content_type == "application/pdf"
    assert proofs[0].url.endswith(".pdf")


def test_staff_confirm_payment(fine, student, librarian, login, clock):
    """
    Test the verification of a submitted payment.

    Verifies:
    - pending_verification -> paid sets resolvedAt
    - A paid fine can no longer be changed, paid or given new proofs
    """
    alice = login(student)
    libby = login(librarian)
    alice.pay_fine(fine, proofs=[PNG])

    paid = libby.update_fine_status(fine.id, "paid")
    assert paid.status is FineStatus.PAID
    assert paid.resolved_at is not None

    with pytest.raises(StateConflictError):
        libby.update_fine(fine.id, reason="Typo")
    with pytest.raises(StateConflictError):
        libby.update_fine_status(fine.id, "active")
    with pytest.raises(StateConflictError):
        alice.pay_fine(fine.id, proofs=[PNG])
    with pytest.raises(StateConflictError):
        alice.upload_fine_proofs(fine.id, [PNG])
    # the last copy the client saw is enough to refuse locally
    with pytest.raises(StateConflictError):
        libby.update_fine(paid, amount=1)

    assert libby.list_fines()[0].status is FineStatus.PAID


def test_staff_bounce_back_payment(fine, student, librarian, login):
    alice = login(student)
    libby = login(librarian)
    alice.pay_fine(fine, proofs=[PNG])

    bounced = libby.update_fine_status(fine.id, FineStatus.ACTIVE)
    assert bounced.status is FineStatus.ACTIVE
    assert bounced.resolved_at is None

    again = alice.pay_fine(bounced, proofs=[PNG])
    assert again.fine.status is FineStatus.PENDING_VERIFICATION


def test_staff_waive_and_collect(fine, librarian, login):
    libby = login(librarian)
    cancelled = libby.update_fine_status(fine.id, "cancelled")
    assert cancelled.status is FineStatus.CANCELLED
    assert cancelled.resolved_at is not None

    with pytest.raises(StateConflictError):
        libby.update_fine_status(fine.id, "paid")


def test_waiving_needs_an_active_fine(fine, student, librarian, login):
    login(student).pay_fine(fine, proofs=[PNG])
    with pytest.raises(StateConflictError):
        login(librarian).update_fine_status(fine.id, "cancelled")


def test_students_cannot_update_fines(fine, student, login):
    with pytest.raises(AuthorizationError):
        login(student).update_fine(fine.id, status="paid")


def test_update_amount_and_reason(fine, librarian, login):
    libby = login(librarian)
    updated = libby.update_fine(fine.id, amount=7.5, reason="Reduced after review")
    assert updated.amount == 7.5
    assert updated.reason == "Reduced after review"
    assert updated.status is FineStatus.ACTIVE

    with pytest.raises(ValidationError):
        libby.update_fine(fine.id, amount=-1)
    with pytest.raises(ValidationError):
        libby.update_fine(fine.id)


def test_pay_requires_a_proof(fine, student, login):
    """
    Test that a payment without any proof is refused.

    Verifies:
    - The server answers 400 when the request carries no file
    - The client refuses before sending anything
    - The fine stays active in both cases
    """
    alice = login(student)
    response = alice.http.post(f"/api/fines/{fine.id}/pay", data={"kind": "cash"})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"

    with pytest.raises(ValidationError):
        alice.pay_fine(fine.id)

    assert alice.list_my_fines()[0].status is FineStatus.ACTIVE


def test_paid_fine_without_proof_still_conflicts(fine, student, librarian, login):
    login(librarian).update_fine_status(fine.id, "paid")
    response = login(student).http.post(f"/api/fines/{fine.id}/pay")
    assert response.status_code == 409
