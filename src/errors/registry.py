"""Error code registry with E-XXXX format codes.

Organizes the errors the sync services surface into code ranges:
- E-1xxx: Remote transport errors (timeouts, network, rate limits)
- E-2xxx: Data and validation errors
- E-3xxx: Sync, conflict and webhook errors
- E-4xxx: System/database errors
- E-5xxx: Authentication errors

Each classification category maps to a default code so every
ErrorRecord carries one.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Classification categories for failures."""

    timeout = "timeout"
    rate_limit = "rate_limit"
    auth = "auth"
    validation = "validation"
    network = "network"
    database = "database"
    conflict = "conflict"
    webhook = "webhook"
    unknown = "unknown"


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the operator should take to resolve.
        is_retryable: Whether the operation can be retried without operator action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Remote transport (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.timeout,
        title="Remote Timeout",
        message_template="Request to the remote store timed out: {detail}",
        remediation="Retried automatically with backoff. Raise remote.timeout_seconds if it persists.",
        is_retryable=True,
    ),
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.network,
        title="Network Failure",
        message_template="Could not reach the remote store: {detail}",
        remediation="Check connectivity and remote.site_url. Retried automatically.",
        is_retryable=True,
    ),
    "E-1003": ErrorCode(
        code="E-1003",
        category=ErrorCategory.rate_limit,
        title="Rate Limited",
        message_template="The remote store rejected the request with 429: {detail}",
        remediation="Retried after the Retry-After interval. Lower sync.batch_size if frequent.",
        is_retryable=True,
    ),
    # Data and validation (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.validation,
        title="Invalid Record Data",
        message_template="Record failed validation: {detail}",
        remediation="Correct the record on the side that produced it and re-run the sync.",
    ),
    # Sync, conflict and webhook (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.conflict,
        title="Unresolved Conflict",
        message_template="Conflict could not be resolved automatically: {detail}",
        remediation="Resolve the pending conflict manually.",
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.webhook,
        title="Webhook Processing Failed",
        message_template="Webhook event could not be applied: {detail}",
        remediation="Retried automatically; replay failed events once the cause is fixed.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.unknown,
        title="Unexpected Sync Error",
        message_template="Unexpected error: {detail}",
        remediation="Inspect the error record and logs.",
    ),
    # System (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.database,
        title="Database Error",
        message_template="Database operation failed: {detail}",
        remediation="Connection errors are retried; constraint violations need data repair.",
    ),
    # Authentication (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.auth,
        title="Remote Authentication Failed",
        message_template="The remote store rejected the credentials: {detail}",
        remediation="Update remote.consumer_key / remote.consumer_secret.",
    ),
}

CATEGORY_ERROR_CODES: dict[ErrorCategory, str] = {
    ErrorCategory.timeout: "E-1001",
    ErrorCategory.network: "E-1002",
    ErrorCategory.rate_limit: "E-1003",
    ErrorCategory.validation: "E-2001",
    ErrorCategory.conflict: "E-3001",
    ErrorCategory.webhook: "E-3002",
    ErrorCategory.unknown: "E-3003",
    ErrorCategory.database: "E-4001",
    ErrorCategory.auth: "E-5001",
}


def get_error(code: str) -> ErrorCode | None:
    """Look up an error code definition.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Return all error codes in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def code_for_category(category: ErrorCategory) -> ErrorCode:
    """Return the default error code for a classification category."""
    return ERROR_REGISTRY[CATEGORY_ERROR_CODES[category]]
