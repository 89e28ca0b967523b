"""Typed domain exceptions raised by the sync services.

Callers (CLI, an embedding web layer) catch specific exception types
instead of matching on message text.

Usage:
    # In service layer
    raise NotFoundError("BatchJob", job_id)

    # In caller
    try:
        status = await service.get_job_status(job_id)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
"""

from enum import Enum


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent operation on the same scope)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Input failed validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class InvalidStateTransition(DomainError):
    """Raised when attempting a transition the lifecycle does not allow.

    Attributes:
        resource_type: Kind of record (SyncSession, BatchJob).
        current_state: The current state.
        attempted_state: The state that was attempted.
    """

    def __init__(
        self,
        resource_type: str,
        current_state: Enum | str,
        attempted_state: Enum | str,
    ) -> None:
        self.resource_type = resource_type
        self.current_state = getattr(current_state, "value", current_state)
        self.attempted_state = getattr(attempted_state, "value", attempted_state)
        super().__init__(
            f"{resource_type} cannot transition from "
            f"'{self.current_state}' to '{self.attempted_state}'"
        )


class SyncInProgressError(ConflictError):
    """A full sync is already running for the scope."""

    def __init__(self, scope: str, sync_id: str | None = None) -> None:
        detail = f" ({sync_id})" if sync_id else ""
        super().__init__(f"A full sync is already running for scope '{scope}'{detail}")
        self.scope = scope
        self.sync_id = sync_id


class SyncAbortedError(DomainError):
    """Unrecoverable top-level condition that fails a whole sync session."""

    def __init__(self, message: str, category: str | None = None) -> None:
        super().__init__(message)
        self.category = category


class CircuitOpenError(DomainError):
    """The circuit breaker for an operation class is open."""

    def __init__(self, key: str, next_attempt: str | None) -> None:
        super().__init__(
            f"Circuit breaker '{key}' is open until {next_attempt or 'reset'}"
        )
        self.key = key
        self.next_attempt = next_attempt


class RateLimitExceeded(DomainError):
    """A webhook source exceeded its request budget."""

    def __init__(self, source: str, limit: int, window_seconds: float) -> None:
        super().__init__(
            f"Rate limit exceeded for '{source}': "
            f"{limit} requests per {window_seconds:g}s"
        )
        self.source = source


class SignatureVerificationError(ValidationError):
    """Webhook signature is missing or does not match the payload."""

    def __init__(self, event_id: str | None = None) -> None:
        super().__init__("Invalid webhook signature")
        self.event_id = event_id


class UnsupportedEventError(ValidationError):
    """Webhook topic is not one the queue knows how to apply."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unsupported webhook event type '{event_type}'")
        self.event_type = event_type
