"""Error handling framework for StoreSync.

This package provides:
- Typed domain exceptions raised by the services
- Error code registry with E-XXXX format codes
- Ordered category -> pattern classification table

Error categories:
- E-1xxx: Remote transport errors
- E-2xxx: Data and validation errors
- E-3xxx: Sync, conflict and webhook errors
- E-4xxx: System/database errors
- E-5xxx: Authentication errors
"""

from src.errors.classification import (
    CLASSIFICATION_PATTERNS,
    classify_error,
    classify_message,
    is_connection_error,
    is_constraint_violation,
)
from src.errors.domain import (
    CircuitOpenError,
    ConflictError,
    DomainError,
    InvalidStateTransition,
    NotFoundError,
    RateLimitExceeded,
    SignatureVerificationError,
    SyncAbortedError,
    SyncInProgressError,
    UnsupportedEventError,
    ValidationError,
)
from src.errors.registry import (
    CATEGORY_ERROR_CODES,
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    code_for_category,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "CATEGORY_ERROR_CODES",
    "get_error",
    "get_errors_by_category",
    "code_for_category",
    # Classification
    "CLASSIFICATION_PATTERNS",
    "classify_error",
    "classify_message",
    "is_connection_error",
    "is_constraint_violation",
    # Domain exceptions
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "InvalidStateTransition",
    "SyncInProgressError",
    "SyncAbortedError",
    "CircuitOpenError",
    "RateLimitExceeded",
    "SignatureVerificationError",
    "UnsupportedEventError",
]
