"""Observer pattern for sync, batch, webhook and monitoring events.

Provides the SyncEventObserver protocol and SyncEventEmitter class. The
emitter is created once per service graph and injected into every
service, replacing ambient global emitters. Observers may implement any
subset of the protocol; missing hooks are skipped.
"""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class SyncEventObserver(Protocol):
    """Observer protocol for StoreSync lifecycle events.

    Implementations subscribe via SyncEventEmitter.add_observer() to
    feed monitoring, notifications or UI updates.
    """

    async def on_job_queued(self, job_id: str, job_type: str, total_items: int) -> None:
        """Called when a batch job is queued."""
        ...

    async def on_job_started(self, job_id: str, job_type: str) -> None:
        """Called when a batch job starts running."""
        ...

    async def on_job_progress(self, job_id: str, percent: float, message: str) -> None:
        """Called after each processed sub-batch.

        Args:
            job_id: Batch job id.
            percent: Completion percentage, 0-100.
            message: Human-readable progress message.
        """
        ...

    async def on_job_completed(self, job_id: str, processed_items: int) -> None:
        """Called when every item of a job succeeded."""
        ...

    async def on_job_failed(
        self, job_id: str, error_message: str, retry_count: int, will_retry: bool
    ) -> None:
        """Called when a job finishes with failed items.

        Args:
            job_id: Batch job id.
            error_message: Failure summary.
            retry_count: Retries consumed so far.
            will_retry: False once the retry budget is exhausted.
        """
        ...

    async def on_job_retried(self, job_id: str, retry_count: int) -> None:
        """Called when a failed job is requeued."""
        ...

    async def on_sync_started(self, sync_id: str, options: dict[str, Any]) -> None:
        """Called when a sync session starts."""
        ...

    async def on_pull_progress(
        self, sync_id: str, entity_type: str, page: int, processed: int
    ) -> None:
        """Called after each pulled page."""
        ...

    async def on_sync_completed(
        self, sync_id: str, results: dict[str, Any], duration_ms: float
    ) -> None:
        """Called when a sync session completes.

        Args:
            sync_id: Session id.
            results: Serialized SyncResults.
            duration_ms: Wall time of the session.
        """
        ...

    async def on_sync_failed(self, sync_id: str, error: str) -> None:
        """Called when a sync session fails."""
        ...

    async def on_conflict_detected(
        self,
        sync_id: str | None,
        entity_type: str,
        entity_id: str,
        field_name: str,
        conflict_type: str,
    ) -> None:
        """Called for each recorded conflict."""
        ...

    async def on_conflict_resolved(
        self, conflict_id: str, strategy: str, auto_resolved: bool
    ) -> None:
        """Called when a conflict is resolved automatically or manually."""
        ...

    async def on_circuit_state_changed(
        self, key: str, old_state: str, new_state: str
    ) -> None:
        """Called on every circuit breaker transition."""
        ...

    async def on_webhook_received(self, event_id: str, event_type: str) -> None:
        """Called when a webhook event is persisted."""
        ...

    async def on_webhook_processed(
        self, event_id: str, event_type: str, duration_ms: float
    ) -> None:
        """Called when a webhook event was applied."""
        ...

    async def on_webhook_failed(
        self, event_id: str, event_type: str, error: str, will_retry: bool
    ) -> None:
        """Called when applying a webhook event failed."""
        ...

    async def on_recovery_attempted(
        self, category: str, strategy: str, success: bool, duration_ms: float
    ) -> None:
        """Called after each error recovery attempt."""
        ...

    async def on_alert_created(
        self, alert_type: str, severity: str, message: str
    ) -> None:
        """Called when monitoring raises a new alert."""
        ...


class SyncEventEmitter:
    """Emits lifecycle events to registered observers.

    Exceptions from individual observers are caught and logged to prevent
    one broken observer from stopping event delivery to others.
    """

    def __init__(self) -> None:
        """Initialize emitter with empty observer list."""
        self._observers: list[Any] = []

    def add_observer(self, observer: SyncEventObserver | Any) -> None:
        """Register an observer to receive events.

        Args:
            observer: Object implementing some or all SyncEventObserver hooks.
        """
        self._observers.append(observer)

    def remove_observer(self, observer: SyncEventObserver | Any) -> None:
        """Unregister an observer."""
        self._observers.remove(observer)

    async def _dispatch(self, hook: str, *args: Any) -> None:
        for observer in list(self._observers):
            callback = getattr(observer, hook, None)
            if callback is None:
                continue
            try:
                await callback(*args)
            except Exception as e:
                logger.error(
                    "Observer %s failed %s: %s",
                    type(observer).__name__,
                    hook,
                    e,
                )

    async def emit_job_queued(self, job_id: str, job_type: str, total_items: int) -> None:
        await self._dispatch("on_job_queued", job_id, job_type, total_items)

    async def emit_job_started(self, job_id: str, job_type: str) -> None:
        await self._dispatch("on_job_started", job_id, job_type)

    async def emit_job_progress(self, job_id: str, percent: float, message: str) -> None:
        await self._dispatch("on_job_progress", job_id, percent, message)

    async def emit_job_completed(self, job_id: str, processed_items: int) -> None:
        await self._dispatch("on_job_completed", job_id, processed_items)

    async def emit_job_failed(
        self, job_id: str, error_message: str, retry_count: int, will_retry: bool
    ) -> None:
        await self._dispatch(
            "on_job_failed", job_id, error_message, retry_count, will_retry
        )

    async def emit_job_retried(self, job_id: str, retry_count: int) -> None:
        await self._dispatch("on_job_retried", job_id, retry_count)

    async def emit_sync_started(self, sync_id: str, options: dict[str, Any]) -> None:
        await self._dispatch("on_sync_started", sync_id, options)

    async def emit_pull_progress(
        self, sync_id: str, entity_type: str, page: int, processed: int
    ) -> None:
        await self._dispatch("on_pull_progress", sync_id, entity_type, page, processed)

    async def emit_sync_completed(
        self, sync_id: str, results: dict[str, Any], duration_ms: float
    ) -> None:
        await self._dispatch("on_sync_completed", sync_id, results, duration_ms)

    async def emit_sync_failed(self, sync_id: str, error: str) -> None:
        await self._dispatch("on_sync_failed", sync_id, error)

    async def emit_conflict_detected(
        self,
        sync_id: str | None,
        entity_type: str,
        entity_id: str,
        field_name: str,
        conflict_type: str,
    ) -> None:
        await self._dispatch(
            "on_conflict_detected",
            sync_id, entity_type, entity_id, field_name, conflict_type,
        )

    async def emit_conflict_resolved(
        self, conflict_id: str, strategy: str, auto_resolved: bool
    ) -> None:
        await self._dispatch("on_conflict_resolved", conflict_id, strategy, auto_resolved)

    async def emit_circuit_state_changed(
        self, key: str, old_state: str, new_state: str
    ) -> None:
        await self._dispatch("on_circuit_state_changed", key, old_state, new_state)

    async def emit_webhook_received(self, event_id: str, event_type: str) -> None:
        await self._dispatch("on_webhook_received", event_id, event_type)

    async def emit_webhook_processed(
        self, event_id: str, event_type: str, duration_ms: float
    ) -> None:
        await self._dispatch("on_webhook_processed", event_id, event_type, duration_ms)

    async def emit_webhook_failed(
        self, event_id: str, event_type: str, error: str, will_retry: bool
    ) -> None:
        await self._dispatch("on_webhook_failed", event_id, event_type, error, will_retry)

    async def emit_recovery_attempted(
        self, category: str, strategy: str, success: bool, duration_ms: float
    ) -> None:
        await self._dispatch(
            "on_recovery_attempted", category, strategy, success, duration_ms
        )

    async def emit_alert_created(
        self, alert_type: str, severity: str, message: str
    ) -> None:
        await self._dispatch("on_alert_created", alert_type, severity, message)
