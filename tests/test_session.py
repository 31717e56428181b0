from bookhive.client import LibraryClient
from bookhive.endpoints import app
from bookhive.lifecycle import Role
from bookhive.session import RememberMeStore, SessionContext, load_session
from bookhive import schemas

import json

from fastapi.testclient import TestClient

from conftest import PASSWORD


def test_remember_me_store_round_trip(tmp_path):
    store = RememberMeStore(tmp_path / "state" / "remember.json")
    assert store.load() is None

    store.save("alice@school.edu")
    assert json.loads(store.path.read_text()) == {"remember": True, "email": "alice@school.edu"}
    assert store.load() == "alice@school.edu"

    store.clear()
    assert store.load() is None
    store.clear()


def test_unreadable_remember_file_is_ignored(tmp_path):
    path = tmp_path / "remember.json"
    path.write_text("{not json")
    assert RememberMeStore(path).load() is None

    path.write_text(json.dumps({"remember": False, "email": "alice@school.edu"}))
    assert RememberMeStore(path).load() is None


def test_load_session_prefills_remembered_email(tmp_path):
    store = RememberMeStore(tmp_path / "remember.json")
    store.save("alice@school.edu")

    session = load_session("http://bookhive.test", store)
    assert session.remembered_email == "alice@school.edu"
    assert not session.is_authenticated
    assert session.actor is None


def test_session_actor_follows_signed_in_user():
    session = SessionContext(api_base="http://bookhive.test")
    session.sign_in(schemas.User(id=7, email="l@school.edu", name="L", role="librarian"))
    assert session.actor.id == 7
    assert session.actor.role is Role.LIBRARIAN
    assert session.actor.is_staff

    session.teardown()
    assert session.actor is None


def test_login_remember_me_and_logout(student, tmp_path):
    """
    Test the session lifecycle of a client.

    Verifies:
    - Login with remember=True stores the email for the next client
    - Logout tears the session down but keeps the remembered email
    - Login with remember=False forgets it again
    """
    store = RememberMeStore(tmp_path / "remember.json")

    client = LibraryClient(http=TestClient(app), remember_store=store)
    assert client.session.remembered_email is None
    user = client.login(student.email, PASSWORD, remember=True)
    assert client.session.user == user
    assert store.load() == "alice@school.edu"

    client.logout()
    assert not client.session.is_authenticated
    assert client.session.remembered_email == "alice@school.edu"
    client.close()

    again = LibraryClient(http=TestClient(app), remember_store=store)
    assert again.session.remembered_email == "alice@school.edu"
    again.login(student.email, PASSWORD, remember=False)
    assert store.load() is None
    assert again.session.remembered_email is None
    again.close()


def test_change_password_through_client(student, login):
    alice = login(student)
    alice.change_password(PASSWORD, "brand-new-pass", "brand-new-pass")

    with LibraryClient(http=TestClient(app)) as fresh:
        assert fresh.login(student.email, "brand-new-pass").email == student.email
