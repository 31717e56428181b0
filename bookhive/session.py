"""Client-side session state.

The session is an explicit object owned by ``LibraryClient``: it is created
when the client loads, filled in on login and torn down on logout. The only
thing that outlives a session is the optional "remember me" email, kept in a
small JSON file.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from bookhive import config
from bookhive.lifecycle import Actor, normalize_role


logger = logging.getLogger(__name__)


class RememberMeStore:
    """Persist the email of a user who ticked "remember me"."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else config.REMEMBER_FILE

    def load(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable remember-me file %s", self.path)
            return None
        if not isinstance(data, dict) or not data.get("remember"):
            return None
        email = data.get("email")
        return email if isinstance(email, str) and email else None

    def save(self, email: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"remember": True, "email": email}, f)
        os.replace(tmp_path, self.path)

    def clear(self):
        if self.path.exists():
            self.path.unlink()


@dataclass
class SessionContext:
    """State of one signed-in (or signed-out) client."""

    api_base: str
    user: Optional[object] = None
    remembered_email: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None

    @property
    def actor(self) -> Optional[Actor]:
        if self.user is None:
            return None
        return Actor(id=self.user.id, role=normalize_role(self.user.role))

    def sign_in(self, user):
        self.user = user

    def teardown(self):
        """Forget the signed-in user. The remembered email is kept."""
        self.user = None


def load_session(api_base: str, store: Optional[RememberMeStore] = None) -> SessionContext:
    """Create the session a client starts with, pre-filling a remembered email."""
    remembered = store.load() if store is not None else None
    return SessionContext(api_base=api_base, remembered_email=remembered)
