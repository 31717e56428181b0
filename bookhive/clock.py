from datetime import date, datetime


def get_today() -> date:
    """Dependency returning the current calendar date (overridden in tests)."""
    return date.today()


def get_now() -> datetime:
    """Dependency returning the current timestamp (overridden in tests)."""
    return datetime.now()
