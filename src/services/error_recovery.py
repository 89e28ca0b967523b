"""Category-driven error recovery gated by circuit breakers.

handle_error() classifies a failure, asks the breaker for the
(operation_type, category) key whether recovery may be attempted, runs
the category's recovery strategy, feeds the outcome back to the breaker
and durably records the attempt in error_records.

Strategies per category:
- timeout / network: exponential backoff retry
- rate_limit: wait Retry-After (or a multiple of the base delay), retry
- auth: no auto-recovery, left pending for manual action
- validation: one deterministic coercion of the payload, then retry
- database: backoff retry on connection errors, terminal on constraints
- conflict: terminal, left pending in the manual queue
- webhook: flat retry
- unknown: surfaced, left pending
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cli.config import RecoveryConfig
from src.db.models import BreakerState, CircuitBreakerRecord, ErrorRecord, RecoveryStatus
from src.db.upsert import upsert
from src.errors.classification import (
    classify_error,
    is_connection_error,
    is_constraint_violation,
)
from src.errors.domain import NotFoundError
from src.errors.registry import ErrorCategory, code_for_category
from src.services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from src.services.events import SyncEventEmitter
from src.utils.clock import Clock, to_iso, utc_now
from src.utils.redaction import redact_for_logging, sanitize_error_message

logger = logging.getLogger(__name__)

RetryCallable = Callable[[dict[str, Any] | None], Awaitable[Any]]
SleepCallable = Callable[[float], Awaitable[None]]


class RecoveryStrategy(str, Enum):
    """Recovery action applied to an error category."""

    exponential_backoff = "exponential_backoff"
    wait_retry_after = "wait_retry_after"
    manual = "manual"
    coerce_and_retry = "coerce_and_retry"
    database_retry = "database_retry"
    manual_queue = "manual_queue"
    flat_retry = "flat_retry"
    surface = "surface"
    circuit_open = "circuit_open"
    disabled = "disabled"


RECOVERY_STRATEGIES: dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.timeout: RecoveryStrategy.exponential_backoff,
    ErrorCategory.network: RecoveryStrategy.exponential_backoff,
    ErrorCategory.rate_limit: RecoveryStrategy.wait_retry_after,
    ErrorCategory.auth: RecoveryStrategy.manual,
    ErrorCategory.validation: RecoveryStrategy.coerce_and_retry,
    ErrorCategory.database: RecoveryStrategy.database_retry,
    ErrorCategory.conflict: RecoveryStrategy.manual_queue,
    ErrorCategory.webhook: RecoveryStrategy.flat_retry,
    ErrorCategory.unknown: RecoveryStrategy.surface,
}

# Categories whose errors wait for an operator instead of failing outright
MANUAL_CATEGORIES = frozenset({
    ErrorCategory.auth, ErrorCategory.conflict, ErrorCategory.unknown,
})

REQUIRED_FIELD_DEFAULTS: dict[str, Any] = {
    "email": "noreply@example.com",
    "name": "Unknown",
}

_NUMERIC_FIELD_HINTS = ("price", "total", "amount", "cost")


def coerce_payload(
    payload: dict[str, Any] | None,
    required_fields: tuple[str, ...] | list[str] = (),
) -> dict[str, Any] | None:
    """Apply the deterministic data fixes used for validation recovery.

    Fills known required fields that are empty and casts numeric strings in
    price-like fields to float.

    Args:
        payload: Record payload that failed validation.
        required_fields: Fields the target requires.

    Returns:
        A fixed copy, or None when nothing could be changed.
    """
    if not isinstance(payload, dict):
        return None
    fixed = dict(payload)
    changed = False
    for field_name in required_fields:
        if not fixed.get(field_name) and field_name in REQUIRED_FIELD_DEFAULTS:
            fixed[field_name] = REQUIRED_FIELD_DEFAULTS[field_name]
            changed = True
    for key, value in payload.items():
        if isinstance(value, str) and any(h in key.lower() for h in _NUMERIC_FIELD_HINTS):
            try:
                fixed[key] = float(value.strip())
                changed = True
            except ValueError:
                continue
    return fixed if changed else None


@dataclass
class RecoveryOutcome:
    """Result of one handle_error() call.

    Attributes:
        recovered: True if a retry eventually succeeded.
        category: Classified category of the original error.
        strategy: Strategy applied.
        attempts: Retry attempts made.
        result: Return value of the successful retry.
        error: Last error when not recovered.
        requires_manual: True if an operator must act.
        short_circuited: True if the breaker refused the attempt.
        error_record_id: Id of the persisted ErrorRecord.
        duration_ms: Time spent in recovery.
    """

    recovered: bool
    category: ErrorCategory
    strategy: RecoveryStrategy
    attempts: int = 0
    result: Any = None
    error: BaseException | None = None
    requires_manual: bool = False
    short_circuited: bool = False
    error_record_id: str | None = None
    duration_ms: float = 0.0


class ErrorRecoveryService:
    """Classifies failures and drives per-category recovery.

    Attributes:
        breakers: Breaker registry shared with the rest of the service graph.
        config: Recovery tuning.
        stats: In-memory counters since process start.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        breakers: CircuitBreakerRegistry | None = None,
        config: RecoveryConfig | None = None,
        emitter: SyncEventEmitter | None = None,
        clock: Clock = utc_now,
        sleep: SleepCallable | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or RecoveryConfig()
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.config.breaker_threshold,
            reset_timeout=self.config.breaker_timeout,
            clock=clock,
        )
        self.breakers.set_state_change_hook(self._on_breaker_state_change)
        self.emitter = emitter or SyncEventEmitter()
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self.stats: dict[str, float] = {
            "total": 0,
            "recovered": 0,
            "unrecoverable": 0,
            "total_recovery_ms": 0.0,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    async def handle_error(
        self,
        error: BaseException,
        operation_type: str,
        operation_id: str | None = None,
        retry: RetryCallable | None = None,
        context: dict[str, Any] | None = None,
    ) -> RecoveryOutcome:
        """Classify an error and attempt recovery.

        Args:
            error: The failure.
            operation_type: Operation class used in the breaker key
                (e.g. ``customer_pull``).
            operation_id: Identifier of the failing unit.
            retry: Re-runs the operation; receives a coerced payload for
                validation recovery, else None.
            context: Operation context. ``payload`` and ``required_fields``
                feed validation coercion. Persisted redacted.

        Returns:
            RecoveryOutcome. The caller decides whether to re-raise.
        """
        started = time.monotonic()
        context = context or {}
        category = classify_error(error)
        strategy = RECOVERY_STRATEGIES[category]
        breaker = self.breakers.get(operation_type, category.value)

        if not self.config.enable_auto_recovery:
            outcome = RecoveryOutcome(
                recovered=False,
                category=category,
                strategy=RecoveryStrategy.disabled,
                error=error,
                requires_manual=True,
            )
        elif not await breaker.allow_request():
            logger.warning(
                "Recovery for %s short-circuited by open breaker %s",
                operation_type, breaker.key,
            )
            outcome = RecoveryOutcome(
                recovered=False,
                category=category,
                strategy=RecoveryStrategy.circuit_open,
                error=error,
                short_circuited=True,
            )
        else:
            outcome = await self._run_strategy(error, category, strategy, retry, context)
            if outcome.recovered:
                await breaker.record_success()
            else:
                await breaker.record_failure()

        outcome.duration_ms = (time.monotonic() - started) * 1000
        outcome.error_record_id = await self._record(
            error, outcome, operation_type, operation_id, context, breaker
        )
        self._update_stats(outcome)
        await self.emitter.emit_recovery_attempted(
            category.value, outcome.strategy.value, outcome.recovered, outcome.duration_ms
        )
        log = logger.info if outcome.recovered else logger.warning
        log(
            "Recovery %s for %s/%s (category=%s, strategy=%s, attempts=%d)",
            "succeeded" if outcome.recovered else "failed",
            operation_type, operation_id, category.value,
            outcome.strategy.value, outcome.attempts,
        )
        return outcome

    async def execute(
        self,
        operation_type: str,
        operation: RetryCallable,
        operation_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """Run an operation, recovering from its failure when possible.

        Raises:
            Exception: The last error when recovery did not succeed.
        """
        try:
            return await operation(None)
        except Exception as e:
            outcome = await self.handle_error(
                e, operation_type, operation_id, retry=operation, context=context
            )
            if outcome.recovered:
                return outcome.result
            raise (outcome.error or e)

    async def get_recovery_stats(self) -> dict[str, Any]:
        """Aggregate recovery statistics from memory and the error log."""
        async with self._session_factory() as session:
            grouped = await session.execute(
                select(
                    ErrorRecord.category,
                    ErrorRecord.recovery_status,
                    func.count(),
                    func.avg(ErrorRecord.duration_ms),
                ).group_by(ErrorRecord.category, ErrorRecord.recovery_status)
            )
            breakdown = [
                {
                    "category": category,
                    "status": status,
                    "count": count,
                    "avg_duration_ms": float(avg or 0.0),
                }
                for category, status, count, avg in grouped.all()
            ]
        total = self.stats["total"]
        recovered = self.stats["recovered"]
        return {
            "total": int(total),
            "recovered": int(recovered),
            "unrecoverable": int(self.stats["unrecoverable"]),
            "success_rate": (recovered / total) if total else 0.0,
            "avg_recovery_ms": (self.stats["total_recovery_ms"] / recovered) if recovered else 0.0,
            "breakdown": breakdown,
            "open_breakers": [
                {"key": f"{s.service_name}_{s.operation_name}", "state": s.state.value,
                 "next_attempt": s.next_attempt}
                for s in self.breakers.open_breakers()
            ],
        }

    async def get_pending_errors(self, limit: int = 50) -> list[ErrorRecord]:
        """Errors awaiting manual action, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ErrorRecord)
                .where(ErrorRecord.recovery_status == RecoveryStatus.pending.value)
                .order_by(ErrorRecord.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_error_resolved(self, error_id: str) -> ErrorRecord:
        """Close a pending error after manual intervention.

        Raises:
            NotFoundError: If the record does not exist.
        """
        async with self._session_factory() as session:
            record = await session.get(ErrorRecord, error_id)
            if record is None:
                raise NotFoundError("ErrorRecord", error_id)
            record.recovery_status = RecoveryStatus.recovered.value
            record.updated_at = to_iso(self._clock())
            await session.commit()
            return record

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _run_strategy(
        self,
        error: BaseException,
        category: ErrorCategory,
        strategy: RecoveryStrategy,
        retry: RetryCallable | None,
        context: dict[str, Any],
    ) -> RecoveryOutcome:
        outcome = RecoveryOutcome(
            recovered=False, category=category, strategy=strategy, error=error
        )
        max_attempts = self.config.max_retry_attempts

        if strategy == RecoveryStrategy.exponential_backoff:
            delays = [
                self.config.retry_delay * (self.config.backoff_multiplier ** i)
                for i in range(max_attempts)
            ]
            return await self._retry_with_delays(outcome, retry, delays)

        elif strategy == RecoveryStrategy.wait_retry_after:
            retry_after = getattr(error, "retry_after", None)
            delay = (
                retry_after if retry_after is not None
                else self.config.retry_delay * self.config.rate_limit_delay_factor
            )
            return await self._retry_with_delays(outcome, retry, [delay] * max_attempts)

        elif strategy == RecoveryStrategy.coerce_and_retry:
            coerced = coerce_payload(
                context.get("payload"), tuple(context.get("required_fields", ()))
            )
            if coerced is None or retry is None:
                return outcome
            return await self._retry_with_delays(outcome, retry, [0.0], payload=coerced)

        elif strategy == RecoveryStrategy.database_retry:
            if is_constraint_violation(error) or not is_connection_error(error):
                return outcome
            delays = [
                self.config.retry_delay * (self.config.backoff_multiplier ** i)
                for i in range(max_attempts)
            ]
            return await self._retry_with_delays(outcome, retry, delays)

        elif strategy == RecoveryStrategy.flat_retry:
            return await self._retry_with_delays(
                outcome, retry, [self.config.retry_delay] * max_attempts
            )

        elif strategy in (
            RecoveryStrategy.manual,
            RecoveryStrategy.manual_queue,
            RecoveryStrategy.surface,
        ):
            outcome.requires_manual = True
            return outcome

        raise ValueError(f"Unhandled recovery strategy: {strategy}")

    async def _retry_with_delays(
        self,
        outcome: RecoveryOutcome,
        retry: RetryCallable | None,
        delays: list[float],
        payload: dict[str, Any] | None = None,
    ) -> RecoveryOutcome:
        if retry is None:
            return outcome
        for delay in delays:
            if delay > 0:
                await self._sleep(delay)
            outcome.attempts += 1
            try:
                outcome.result = await retry(payload)
            except Exception as e:
                outcome.error = e
                logger.debug(
                    "Recovery attempt %d (%s) failed: %s",
                    outcome.attempts, outcome.strategy.value, e,
                )
                continue
            outcome.recovered = True
            outcome.error = None
            return outcome
        return outcome

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _record(
        self,
        error: BaseException,
        outcome: RecoveryOutcome,
        operation_type: str,
        operation_id: str | None,
        context: dict[str, Any],
        breaker: CircuitBreaker,
    ) -> str:
        if outcome.recovered:
            status = RecoveryStatus.recovered
        elif outcome.requires_manual or outcome.category in MANUAL_CATEGORIES:
            status = RecoveryStatus.pending
        else:
            status = RecoveryStatus.failed
        now = to_iso(self._clock())
        record = ErrorRecord(
            category=outcome.category.value,
            error_code=code_for_category(outcome.category).code,
            operation_type=operation_type,
            operation_id=operation_id,
            message=sanitize_error_message(f"{type(error).__name__}: {error}") or "",
            recovery_strategy=outcome.strategy.value,
            recovery_status=status.value,
            attempts=outcome.attempts,
            max_attempts=self.config.max_retry_attempts,
            next_retry_at=(
                to_iso(breaker.next_attempt)
                if outcome.short_circuited and breaker.next_attempt else None
            ),
            duration_ms=outcome.duration_ms,
            context_json=json.dumps(redact_for_logging(context), default=str) if context else None,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        return record.id

    def _update_stats(self, outcome: RecoveryOutcome) -> None:
        self.stats["total"] += 1
        if outcome.recovered:
            self.stats["recovered"] += 1
            self.stats["total_recovery_ms"] += outcome.duration_ms
        else:
            self.stats["unrecoverable"] += 1

    async def _on_breaker_state_change(
        self, breaker: CircuitBreaker, old_state: BreakerState, new_state: BreakerState
    ) -> None:
        snapshot = breaker.snapshot()
        async with self._session_factory() as session:
            await upsert(
                session,
                CircuitBreakerRecord.__table__,
                {
                    "service_name": snapshot.service_name,
                    "operation_name": snapshot.operation_name,
                    "state": snapshot.state.value,
                    "failure_count": snapshot.failure_count,
                    "failure_threshold": snapshot.failure_threshold,
                    "last_failure": snapshot.last_failure,
                    "next_attempt": snapshot.next_attempt,
                    "updated_at": to_iso(self._clock()),
                },
                conflict_columns=["service_name", "operation_name"],
            )
            await session.commit()
        await self.emitter.emit_circuit_state_changed(
            breaker.key, old_state.value, new_state.value
        )
