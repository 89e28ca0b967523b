"""Error classification by explicit category -> pattern table.

The table is ordered; the first category with a matching pattern wins and
anything unmatched is ``unknown``. Typed exceptions (client timeouts,
HTTP status codes, SQLAlchemy errors) are classified before the message
text is inspected. Recovery handlers consume the category only, so the
table can be tested and tuned independently of recovery logic.
"""

import re

import httpx
from sqlalchemy.exc import IntegrityError, OperationalError

from src.errors.registry import ErrorCategory


def _compile(*patterns: str) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


CLASSIFICATION_PATTERNS: list[tuple[ErrorCategory, list[re.Pattern[str]]]] = [
    (ErrorCategory.timeout, _compile(r"timeout", r"timed out", r"ETIMEDOUT", r"ECONNRESET")),
    (ErrorCategory.rate_limit, _compile(r"rate limit", r"\b429\b", r"too many requests")),
    (ErrorCategory.auth, _compile(
        r"unauthori[sz]ed", r"\b401\b", r"\b403\b", r"authentication", r"invalid credentials",
    )),
    (ErrorCategory.validation, _compile(r"validation", r"invalid data", r"missing required")),
    (ErrorCategory.network, _compile(
        r"ENOTFOUND", r"ECONNREFUSED", r"network", r"connection refused",
    )),
    (ErrorCategory.database, _compile(
        r"database", r"connection", r"query failed", r"constraint", r"integrity",
    )),
    (ErrorCategory.conflict, _compile(r"conflict", r"merge", r"resolution failed")),
    (ErrorCategory.webhook, _compile(r"webhook", r"signature", r"payload")),
]

# Sub-classification of database errors
DB_CONNECTION_PATTERNS = _compile(r"connection", r"ECONNREFUSED", r"timeout", r"pool", r"locked")
DB_CONSTRAINT_PATTERNS = _compile(
    r"constraint", r"duplicate", r"unique", r"foreign key", r"violates",
)


def _status_category(status_code: int) -> ErrorCategory | None:
    if status_code == 429:
        return ErrorCategory.rate_limit
    if status_code in (401, 403):
        return ErrorCategory.auth
    if status_code in (408, 504):
        return ErrorCategory.timeout
    if status_code in (400, 422):
        return ErrorCategory.validation
    return None


def classify_message(message: str) -> ErrorCategory:
    """Classify free error text against the ordered pattern table.

    Args:
        message: Error text.

    Returns:
        The first matching category, or ErrorCategory.unknown.
    """
    for category, patterns in CLASSIFICATION_PATTERNS:
        if any(p.search(message) for p in patterns):
            return category
    return ErrorCategory.unknown


def classify_error(error: BaseException | str) -> ErrorCategory:
    """Classify an exception (or message) into an ErrorCategory.

    Args:
        error: Exception instance or raw error text.

    Returns:
        The error category.
    """
    if isinstance(error, str):
        return classify_message(error)

    if isinstance(error, (TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.timeout
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        category = _status_category(status_code)
        if category is not None:
            return category
    if isinstance(error, httpx.NetworkError):
        return ErrorCategory.network
    if isinstance(error, (IntegrityError, OperationalError)):
        return ErrorCategory.database

    category = getattr(error, "category", None)
    if isinstance(category, ErrorCategory):
        return category
    return classify_message(str(error))


def is_constraint_violation(error: BaseException | str) -> bool:
    """Return True when a database error is an integrity/constraint violation."""
    if isinstance(error, IntegrityError):
        return True
    text = str(error)
    return any(p.search(text) for p in DB_CONSTRAINT_PATTERNS)


def is_connection_error(error: BaseException | str) -> bool:
    """Return True when a database error looks like a transient connection problem."""
    text = str(error)
    return any(p.search(text) for p in DB_CONNECTION_PATTERNS)
