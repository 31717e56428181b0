import os
from decimal import Decimal
from pathlib import Path


def _bool(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookhive.db")

DAILY_FINE_RATE = Decimal(os.getenv("BOOKHIVE_DAILY_FINE", "5.00"))
DEFAULT_LOAN_DAYS = int(os.getenv("BOOKHIVE_DEFAULT_LOAN_DAYS", "14"))
MAX_EXTENSION_DAYS = int(os.getenv("BOOKHIVE_MAX_EXTENSION_DAYS", "365"))

SESSION_COOKIE_NAME = os.getenv("BOOKHIVE_SESSION_COOKIE", "bookhive_session")
SESSION_COOKIE_SECURE = _bool(os.getenv("SESSION_COOKIE_SECURE"), default=False)

UPLOAD_DIR = Path(os.getenv("BOOKHIVE_UPLOAD_DIR", "./uploads"))
MAX_PROOF_BYTES = int(os.getenv("BOOKHIVE_MAX_PROOF_BYTES", str(5 * 1024 * 1024)))
MAX_PROOFS_PER_UPLOAD = 3

ADMIN_EMAIL = os.getenv("BOOKHIVE_ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("BOOKHIVE_ADMIN_PASSWORD")

API_BASE_URL = os.getenv("BOOKHIVE_API_BASE_URL", "http://localhost:5000").rstrip("/")
HTTP_TIMEOUT = float(os.getenv("BOOKHIVE_HTTP_TIMEOUT", "10"))
REMEMBER_FILE = Path(
    os.getenv("BOOKHIVE_REMEMBER_FILE", str(Path.home() / ".bookhive" / "remember.json"))
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
