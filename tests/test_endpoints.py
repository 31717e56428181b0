from bookhive import models
from bookhive.auth import hash_password, verify_password
from bookhive.database import commit_or_conflict
from bookhive.endpoints import app
from bookhive.errors import StateConflictError
from bookhive.lifecycle import RETURNED_BEFORE_DECISION

from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD, TestingSessionLocal


client = TestClient(app)


def test_health_check():
    """
    Test the health check endpoint.

    Verifies:
    - Endpoint returns 200 OK
    - Response contains expected status message
    """
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "bookhive-api"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def test_login_sets_session_cookie(student):
    """
    Test a successful login.

    Verifies:
    - Response is 200 with the user in camelCase
    - The session cookie is set and opens protected routes
    """
    http = TestClient(app)
    response = http.post(
        "/api/auth/login", json={"email": "ALICE@school.edu", "password": PASSWORD}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["user"]["email"] == "alice@school.edu"
    assert data["user"]["studentId"] == "S-1001"
    assert data["user"]["role"] == "student"
    assert "passwordHash" not in data["user"]

    assert http.get("/api/auth/me").status_code == 200


def test_login_with_wrong_password(student):
    response = client.post(
        "/api/auth/login", json={"email": "alice@school.edu", "password": "nope"}
    )
    assert response.status_code == 401
    assert response.json() == {
        "ok": False,
        "message": "Invalid email or password.",
        "code": "unauthorized",
    }


def test_protected_routes_require_session():
    """
    Test that routes reject requests without a session cookie.

    Verifies:
    - 401 with the unauthorized code, rendered in the error envelope
    """
    for method, path in [
        ("get", "/api/auth/me"),
        ("get", "/api/books"),
        ("get", "/api/borrow-records"),
        ("get", "/api/fines/my"),
    ]:
        response = getattr(client, method)(path)
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"


def test_logout_closes_session(student, login):
    alice = login(student)
    assert alice.http.post("/api/auth/logout").status_code == 200
    assert alice.http.get("/api/auth/me").status_code == 401


def test_change_password(student, login):
    alice = login(student)
    response = alice.http.post(
        "/api/auth/change-password",
        json={"currentPassword": "wrong", "newPassword": "another-pass"},
    )
    assert response.status_code == 400

    response = alice.http.post(
        "/api/auth/change-password",
        json={"currentPassword": PASSWORD, "newPassword": "another-pass"},
    )
    assert response.status_code == 200

    fresh = TestClient(app)
    login_response = fresh.post(
        "/api/auth/login", json={"email": student.email, "password": "another-pass"}
    )
    assert login_response.status_code == 200


# ---------------------------------------------------------------------------
# Users and books
# ---------------------------------------------------------------------------


def test_admin_creates_user(admin, login):
    root = login(admin)
    response = root.http.post(
        "/api/users",
        json={
            "email": "Carol@School.edu",
            "name": "Carol",
            "password": "carol-pass",
            "role": "faculty",
        },
    )
    assert response.status_code == 201
    assert response.json()["user"]["email"] == "carol@school.edu"
    assert response.json()["user"]["role"] == "faculty"

    duplicate = root.http.post(
        "/api/users",
        json={"email": "carol@school.edu", "name": "C", "password": "carol-pass"},
    )
    assert duplicate.status_code == 400


def test_only_admin_creates_users(librarian, login):
    libby = login(librarian)
    response = libby.http.post(
        "/api/users",
        json={"email": "x@school.edu", "name": "X", "password": "password1"},
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_students_cannot_list_users(student, login):
    assert login(student).http.get("/api/users").status_code == 403


def test_create_and_list_books(librarian, student, login):
    libby = login(librarian)
    response = libby.http.post(
        "/api/books",
        json={"title": "Intro to Algorithms", "author": "Cormen", "totalCopies": 2},
    )
    assert response.status_code == 201
    book = response.json()["book"]
    assert book["loanDays"] == 14
    assert book["availableCopies"] == 2

    books = login(student).http.get("/api/books").json()["books"]
    assert [b["title"] for b in books] == ["Intro to Algorithms"]


def test_students_cannot_create_books(student, login):
    response = login(student).http.post("/api/books", json={"title": "T", "author": "A"})
    assert response.status_code == 403


def test_invalid_body_is_a_validation_error(student, login):
    response = login(student).http.post("/api/borrow-records/self", json={})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert "bookId" in response.json()["message"]


# ---------------------------------------------------------------------------
# Borrow records
# ---------------------------------------------------------------------------


def test_self_borrow_opens_pending_pickup(student, make_book, login):
    """
    Test a self-service borrow.

    Verifies:
    - 201 with a pending_pickup record
    - Dates come from today and the book's loan duration
    - One copy is consumed
    """
    book = make_book(loan_days=14, copies=1)
    alice = login(student)

    response = alice.http.post("/api/borrow-records/self", json={"bookId": book.id})
    assert response.status_code == 201
    record = response.json()["record"]
    assert record["status"] == "pending_pickup"
    assert record["borrowDate"] == "2024-01-01"
    assert record["dueDate"] == "2024-01-15"
    assert record["bookTitle"] == "Intro to Algorithms"
    assert record["studentEmail"] == "alice@school.edu"
    assert record["extensionRequestStatus"] == "none"

    books = alice.http.get("/api/books").json()["books"]
    assert books[0]["availableCopies"] == 0


def test_unavailable_book_conflicts(student, other_student, make_book, login):
    book = make_book(copies=1)
    assert login(student).http.post("/api/borrow-records/self", json={"bookId": book.id}).status_code == 201

    response = login(other_student).http.post("/api/borrow-records/self", json={"bookId": book.id})
    assert response.status_code == 409
    assert "not available" in response.json()["message"]


def test_same_user_cannot_hold_two_loans_of_one_book(student, make_book, login):
    book = make_book(copies=2)
    alice = login(student)
    assert alice.http.post("/api/borrow-records/self", json={"bookId": book.id}).status_code == 201
    response = alice.http.post("/api/borrow-records/self", json={"bookId": book.id})
    assert response.status_code == 409


def test_borrow_missing_book(student, login):
    response = login(student).http.post("/api/borrow-records/self", json={"bookId": 999})
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_staff_borrow_starts_borrowed(librarian, student, make_book, login):
    book = make_book()
    response = login(librarian).http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    )
    assert response.status_code == 201
    record = response.json()["record"]
    assert record["status"] == "borrowed"
    assert record["borrowDate"] == "2024-01-01"


def test_staff_borrow_validates_dates(librarian, student, make_book, login):
    book = make_book()
    response = login(librarian).http.post(
        "/api/borrow-records",
        json={
            "userId": student.id,
            "bookId": book.id,
            "borrowDate": "2024-01-05",
            "dueDate": "2024-01-04",
        },
    )
    assert response.status_code == 400


def test_students_cannot_borrow_for_others(student, other_student, make_book, login):
    book = make_book()
    response = login(student).http.post(
        "/api/borrow-records",
        json={"userId": other_student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    )
    assert response.status_code == 403


def test_students_only_see_their_own_records(student, other_student, librarian, make_book, login):
    first = make_book(title="A")
    second = make_book(title="B")
    alice = login(student)
    bob = login(other_student)
    alice_record = alice.http.post("/api/borrow-records/self", json={"bookId": first.id}).json()["record"]
    bob.http.post("/api/borrow-records/self", json={"bookId": second.id})

    assert [r["id"] for r in alice.http.get("/api/borrow-records").json()["records"]] == [alice_record["id"]]
    assert len(login(librarian).http.get("/api/borrow-records").json()["records"]) == 2
    assert bob.http.get(f"/api/borrow-records/{alice_record['id']}").status_code == 403


def test_patch_transitions(librarian, student, make_book, login):
    """
    Test the PATCH transitions end to end.

    Verifies:
    - Pickup, return request, rejection and finalize are accepted in order
    - A stale expectedStatus is a 409
    - Finalize frees the copy
    """
    book = make_book()
    alice = login(student)
    libby = login(librarian)
    record_id = alice.http.post("/api/borrow-records/self", json={"bookId": book.id}).json()["record"]["id"]
    url = f"/api/borrow-records/{record_id}"

    response = libby.http.patch(url, json={"status": "borrowed", "expectedStatus": "pending_pickup"})
    assert response.json()["record"]["status"] == "borrowed"

    response = alice.http.patch(url, json={"status": "pending_return", "expectedStatus": "borrowed"})
    assert response.json()["record"]["status"] == "pending_return"

    response = libby.http.patch(url, json={"status": "borrowed", "expectedStatus": "pending_pickup"})
    assert response.status_code == 409

    response = libby.http.patch(url, json={"status": "borrowed", "expectedStatus": "pending_return"})
    assert response.json()["record"]["status"] == "borrowed"

    response = libby.http.patch(url, json={"status": "returned", "returnDate": "2024-01-05"})
    record = response.json()["record"]
    assert record["status"] == "returned"
    assert record["returnDate"] == "2024-01-05"
    assert record["fine"] == 0

    books = libby.http.get("/api/books").json()["books"]
    assert books[0]["availableCopies"] == 1


def test_patch_accepts_legacy_pending(student, librarian, make_book, login):
    book = make_book()
    alice = login(student)
    record_id = login(librarian).http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]

    response = alice.http.patch(f"/api/borrow-records/{record_id}", json={"status": "pending"})
    assert response.status_code == 200
    assert response.json()["record"]["status"] == "pending_return"


def test_legacy_rows_read_as_pending_return(student, make_book, login, db):
    book = make_book()
    db.add(
        models.BorrowRecord(
            user_id=student.id,
            book_id=book.id,
            borrow_date=date(2024, 1, 1),
            due_date=date(2024, 1, 15),
            status="pending",
        )
    )
    db.commit()

    alice = login(student)
    records = alice.http.get("/api/borrow-records", params={"status": "pending_return"}).json()["records"]
    assert len(records) == 1
    assert records[0]["status"] == "pending_return"


def test_empty_patch_is_rejected(librarian, student, make_book, login):
    book = make_book()
    libby = login(librarian)
    record_id = libby.http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]
    response = libby.http.patch(f"/api/borrow-records/{record_id}", json={})
    assert response.status_code == 400


def test_patch_unknown_record(librarian, login):
    response = login(librarian).http.patch("/api/borrow-records/999", json={"status": "borrowed"})
    assert response.status_code == 404


def test_due_date_change_recomputes_fine(librarian, student, make_book, login, clock):
    book = make_book()
    libby = login(librarian)
    record_id = libby.http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]

    clock.today = date(2024, 1, 14)
    records = libby.http.get("/api/borrow-records").json()["records"]
    assert records[0]["fine"] == 20.0

    response = libby.http.patch(f"/api/borrow-records/{record_id}", json={"dueDate": "2024-01-12"})
    assert response.json()["record"]["dueDate"] == "2024-01-12"
    assert response.json()["record"]["fine"] == 10.0


def test_students_cannot_change_due_dates(librarian, student, make_book, login):
    book = make_book()
    record_id = login(librarian).http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]
    response = login(student).http.patch(
        f"/api/borrow-records/{record_id}", json={"dueDate": "2024-03-01"}
    )
    assert response.status_code == 403


def test_extension_over_http_truncates_days(student, librarian, make_book, login):
    """
    Test that the server truncates fractional days itself.

    Verifies:
    - days=2.9 is stored as a request for 2 days
    - days=0.5 is rejected with a validation error
    """
    book = make_book()
    record_id = login(librarian).http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]
    alice = login(student)

    response = alice.http.post(f"/api/borrow-records/{record_id}/extend", json={"days": 0.5})
    assert response.status_code == 400

    response = alice.http.post(f"/api/borrow-records/{record_id}/extend", json={"days": 2.9})
    assert response.status_code == 200
    assert response.json()["record"]["extensionRequestedDays"] == 2
    assert "Waiting for librarian approval" in response.json()["message"]


def test_approve_without_request_is_extension_state_error(librarian, student, make_book, login):
    book = make_book()
    libby = login(librarian)
    record_id = libby.http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": "2024-01-10"},
    ).json()["record"]["id"]
    response = libby.http.post(f"/api/borrow-records/{record_id}/extend/approve")
    assert response.status_code == 409
    assert response.json()["code"] == "extension_state"


def test_concurrent_transitions_cannot_both_commit(student, make_book, db):
    """
    Test the compare-and-swap on borrow records.

    Verifies:
    - Two sessions load the same pending_pickup record
    - The first transition commits
    - The second one is rejected as a StateConflictError and leaves the
      first one in place
    """
    book = make_book()
    record = models.BorrowRecord(
        user_id=student.id,
        book_id=book.id,
        borrow_date=date(2024, 1, 1),
        due_date=date(2024, 1, 15),
        status="pending_pickup",
    )
    db.add(record)
    db.commit()
    record_id = record.id

    first = TestingSessionLocal()
    second = TestingSessionLocal()
    try:
        a = first.get(models.BorrowRecord, record_id)
        b = second.get(models.BorrowRecord, record_id)

        a.status = "borrowed"
        commit_or_conflict(first)

        b.status = "pending_return"
        with pytest.raises(StateConflictError):
            commit_or_conflict(second)
    finally:
        first.close()
        second.close()

    db.expire_all()
    assert db.get(models.BorrowRecord, record_id).status == "borrowed"


def test_passwords_are_stored_as_salted_hashes(student, db):
    stored = db.get(models.User, student.id).password_hash
    assert PASSWORD not in stored
    assert stored.startswith(("scrypt:", "pbkdf2:"))
    assert verify_password(PASSWORD, stored)
    assert not verify_password("wrong-pass", stored)
    assert hash_password(PASSWORD) != stored


@pytest.mark.parametrize("stored", ["", None, "not-a-hash", "$$"])
def test_malformed_stored_hash_never_verifies(stored):
    assert not verify_password(PASSWORD, stored)


def _open_borrowed_record(librarian, student, make_book, login, due="2024-01-10"):
    book = make_book()
    return login(librarian).http.post(
        "/api/borrow-records",
        json={"userId": student.id, "bookId": book.id, "dueDate": due},
    ).json()["record"]["id"]


def test_huge_extensions_are_rejected(librarian, student, make_book, login):
    """
    Test that oversized extension requests are refused cleanly.

    Verifies:
    - A librarian's 5,000,000 day extension is a 400, not a server error
    - A student's 1e20 day request is a 400 as well
    - Neither changes the record
    """
    record_id = _open_borrowed_record(librarian, student, make_book, login)

    response = login(librarian).http.post(
        f"/api/borrow-records/{record_id}/extend", json={"days": 5000000}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"

    alice = login(student)
    response = alice.http.post(f"/api/borrow-records/{record_id}/extend", json={"days": 1e20})
    assert response.status_code == 400

    record = alice.get_record(record_id)
    assert record.due_date == date(2024, 1, 10)
    assert record.extension_count == 0
    assert record.extension_request_status.value == "none"


def test_extension_past_the_calendar_end_is_rejected(librarian, student, make_book, login):
    record_id = _open_borrowed_record(librarian, student, make_book, login, due="9999-12-20")
    response = login(librarian).http.post(
        f"/api/borrow-records/{record_id}/extend", json={"days": 30}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_return_closes_pending_extension_request(librarian, student, make_book, login, clock):
    record_id = _open_borrowed_record(librarian, student, make_book, login)
    login(student).request_extension(record_id, 3, reason="Exams")

    clock.today = date(2024, 1, 5)
    returned = login(librarian).finalize_return(record_id)

    assert returned.extension_request_status.value == "disapproved"
    assert returned.extension_decided_by == librarian.id
    assert returned.extension_decided_at == datetime(2024, 1, 5, 9, 0)
    assert returned.extension_decision_note == RETURNED_BEFORE_DECISION
    assert returned.due_date == date(2024, 1, 10)


def test_reading_records_does_not_write(librarian, student, make_book, login, clock):
    """
    Test that listing overdue records only computes the fine for display.

    Verifies:
    - The list, the own-records list and the detail show the accrued fine
    - The stored fine and the record's version are unchanged afterwards
    - A transition with the version the client read still succeeds
    """
    record_id = _open_borrowed_record(librarian, student, make_book, login)

    session = TestingSessionLocal()
    try:
        before = session.get(models.BorrowRecord, record_id)
        version, stored_fine = before.version, before.fine
    finally:
        session.close()

    clock.today = date(2024, 1, 14)
    libby = login(librarian)
    alice = login(student)
    assert libby.list_records()[0].fine == 20.0
    assert alice.list_my_records()[0].fine == 20.0
    assert alice.get_record(record_id).fine == 20.0

    session = TestingSessionLocal()
    try:
        after = session.get(models.BorrowRecord, record_id)
        assert after.version == version
        assert after.fine == stored_fine
    finally:
        session.close()

    assert alice.request_return(record_id).status.value == "pending_return"


# ---------------------------------------------------------------------------
# Book maintenance
# ---------------------------------------------------------------------------


def test_update_book(librarian, make_book, login):
    book = make_book(copies=2)
    libby = login(librarian)
    response = libby.http.patch(
        f"/api/books/{book.id}",
        json={"title": " Algorithms ", "loanDays": 7, "isbn": "9780262046305"},
    )
    assert response.status_code == 200
    updated = response.json()["book"]
    assert updated["title"] == "Algorithms"
    assert updated["author"] == "Cormen"
    assert updated["loanDays"] == 7
    assert updated["isbn"] == "9780262046305"
    assert updated["totalCopies"] == 2

    assert libby.http.patch(f"/api/books/{book.id}", json={}).status_code == 400
    assert libby.http.patch(f"/api/books/{book.id}", json={"title": "  "}).status_code == 400
    assert libby.http.patch("/api/books/999", json={"title": "X"}).status_code == 404


def test_total_copies_cannot_drop_below_lent_out(student, librarian, make_book, login):
    book = make_book(copies=3)
    login(student).create_self_borrow(book.id)
    libby = login(librarian)

    response = libby.http.patch(f"/api/books/{book.id}", json={"totalCopies": 0})
    assert response.status_code == 409

    shrunk = libby.update_book(book.id, total_copies=1)
    assert shrunk.total_copies == 1
    assert shrunk.available_copies == 0

    grown = libby.add_book_copies(book.id, 4)
    assert grown.total_copies == 5
    assert grown.available_copies == 4
    assert libby.books.is_available(book.id)


def test_add_copies_needs_a_positive_count(librarian, student, make_book, login):
    book = make_book()
    response = login(librarian).http.post(f"/api/books/{book.id}/copies", json={"count": 0})
    assert response.status_code == 400
    response = login(student).http.post(f"/api/books/{book.id}/copies", json={"count": 1})
    assert response.status_code == 403


def test_delete_book(librarian, student, make_book, login):
    unused = make_book(title="Unused")
    lent = make_book(title="Lent")
    login(student).create_self_borrow(lent.id)
    libby = login(librarian)

    libby.delete_book(unused.id)
    assert [b.title for b in libby.list_books()] == ["Lent"]

    response = libby.http.delete(f"/api/books/{lent.id}")
    assert response.status_code == 409
    assert libby.http.delete("/api/books/999").status_code == 404
    assert login(student).http.delete(f"/api/books/{lent.id}").status_code == 403
