"""Tests for category-driven error recovery and breaker gating."""

import json

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from src.cli.config import RecoveryConfig
from src.clients.woocommerce import RemoteAPIError, RemoteAuthError
from src.db.models import CircuitBreakerRecord, ErrorRecord
from src.errors.domain import NotFoundError
from src.errors.registry import ErrorCategory
from src.services.error_recovery import (
    ErrorRecoveryService,
    RecoveryStrategy,
    coerce_payload,
)
from src.services.events import SyncEventEmitter


class FlakyOperation:
    """Retry callable failing a set number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None, result="ok"):
        self.failures = failures
        self.error = error or TimeoutError("still timing out")
        self.result = result
        self.calls = []

    async def __call__(self, payload):
        self.calls.append(payload)
        if len(self.calls) <= self.failures:
            raise self.error
        return self.result


class CircuitRecorder:
    def __init__(self):
        self.changes = []
        self.attempts = []

    async def on_circuit_state_changed(self, key, old_state, new_state):
        self.changes.append((key, old_state, new_state))

    async def on_recovery_attempted(self, category, strategy, success, duration_ms):
        self.attempts.append((category, strategy, success))


@pytest.fixture
def recorder():
    return CircuitRecorder()


def _service(session_factory, clock, sleep, recorder=None, **config):
    emitter = SyncEventEmitter()
    if recorder is not None:
        emitter.add_observer(recorder)
    return ErrorRecoveryService(
        session_factory,
        config=RecoveryConfig(**config),
        emitter=emitter,
        clock=clock,
        sleep=sleep,
    )


async def _error_records(session_factory) -> list[ErrorRecord]:
    async with session_factory() as session:
        result = await session.execute(select(ErrorRecord))
        return list(result.scalars().all())


class TestCoercePayload:

    def test_fills_required_and_casts_prices(self):
        fixed = coerce_payload(
            {"email": "", "unit_price": "10.50", "name": "Widget"},
            ["email", "name"],
        )
        assert fixed == {"email": "noreply@example.com", "unit_price": 10.5, "name": "Widget"}

    def test_nothing_to_fix(self):
        assert coerce_payload({"name": "Widget"}, ["name"]) is None
        assert coerce_payload(None) is None


class TestBackoffRetry:
    """Timeouts and network errors retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(
        self, session_factory, clock, sleep, recorder
    ):
        service = _service(session_factory, clock, sleep, recorder)
        retry = FlakyOperation(failures=2)

        outcome = await service.handle_error(
            TimeoutError("timed out"), "customer_pull", "page-1", retry=retry
        )

        assert outcome.recovered is True
        assert outcome.category == ErrorCategory.timeout
        assert outcome.strategy == RecoveryStrategy.exponential_backoff
        assert outcome.attempts == 3
        assert outcome.result == "ok"
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert recorder.attempts == [("timeout", "exponential_backoff", True)]

        records = await _error_records(session_factory)
        assert len(records) == 1
        assert records[0].recovery_status == "recovered"
        assert records[0].error_code == "E-1001"
        assert records[0].id == outcome.error_record_id

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        retry = FlakyOperation(failures=10)

        outcome = await service.handle_error(TimeoutError(), "order_pull", retry=retry)

        assert outcome.recovered is False
        assert outcome.attempts == 3
        assert len(retry.calls) == 3
        assert isinstance(outcome.error, TimeoutError)
        records = await _error_records(session_factory)
        assert records[0].recovery_status == "failed"
        assert records[0].attempts == 3

    @pytest.mark.asyncio
    async def test_no_retry_callable(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        outcome = await service.handle_error(TimeoutError(), "order_pull")
        assert outcome.recovered is False
        assert outcome.attempts == 0
        assert sleep.delays == []


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_honours_retry_after(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        error = RemoteAPIError("429 Too Many Requests", status_code=429, retry_after=2.0)

        outcome = await service.handle_error(
            error, "product_push", retry=FlakyOperation(failures=0)
        )

        assert outcome.recovered is True
        assert outcome.strategy == RecoveryStrategy.wait_retry_after
        assert sleep.delays == [2.0]

    @pytest.mark.asyncio
    async def test_default_wait_is_multiple_of_base_delay(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        error = RemoteAPIError("429 Too Many Requests", status_code=429)

        await service.handle_error(error, "product_push", retry=FlakyOperation(failures=0))

        assert sleep.delays == [10.0]


class TestManualCategories:
    """Auth, conflict and unknown errors wait for an operator."""

    @pytest.mark.asyncio
    async def test_auth_left_pending(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        retry = FlakyOperation(failures=0)

        outcome = await service.handle_error(
            RemoteAuthError("401 Unauthorized", status_code=401), "customer_pull", retry=retry
        )

        assert outcome.recovered is False
        assert outcome.requires_manual is True
        assert outcome.strategy == RecoveryStrategy.manual
        assert retry.calls == []

        pending = await service.get_pending_errors()
        assert [p.category for p in pending] == ["auth"]

    @pytest.mark.asyncio
    async def test_mark_error_resolved(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        outcome = await service.handle_error(
            RemoteAuthError("403 Forbidden", status_code=403), "customer_pull"
        )

        record = await service.mark_error_resolved(outcome.error_record_id)

        assert record.recovery_status == "recovered"
        assert await service.get_pending_errors() == []

    @pytest.mark.asyncio
    async def test_mark_unknown_error_resolved(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        with pytest.raises(NotFoundError):
            await service.mark_error_resolved("missing")


class TestValidation:

    @pytest.mark.asyncio
    async def test_retries_once_with_coerced_payload(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        retry = FlakyOperation(failures=0)

        outcome = await service.handle_error(
            ValueError("Validation failed: missing required field email"),
            "customer_push",
            retry=retry,
            context={"payload": {"email": None, "total": "5.00"}, "required_fields": ["email"]},
        )

        assert outcome.recovered is True
        assert outcome.strategy == RecoveryStrategy.coerce_and_retry
        assert retry.calls == [{"email": "noreply@example.com", "total": 5.0}]
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_uncoercible_payload_not_retried(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        retry = FlakyOperation(failures=0)

        outcome = await service.handle_error(
            ValueError("Validation failed"), "customer_push", retry=retry,
            context={"payload": {"name": "ok"}},
        )

        assert outcome.recovered is False
        assert retry.calls == []


class TestDatabase:

    @pytest.mark.asyncio
    async def test_connection_error_retried(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        error = OperationalError("SELECT 1", {}, Exception("database is locked"))

        outcome = await service.handle_error(
            error, "customer_pull", retry=FlakyOperation(failures=0)
        )

        assert outcome.recovered is True
        assert outcome.strategy == RecoveryStrategy.database_retry

    @pytest.mark.asyncio
    async def test_constraint_violation_terminal(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        retry = FlakyOperation(failures=0)

        outcome = await service.handle_error(error, "customer_pull", retry=retry)

        assert outcome.recovered is False
        assert retry.calls == []
        records = await _error_records(session_factory)
        assert records[0].recovery_status == "failed"


class TestWebhookRetry:

    @pytest.mark.asyncio
    async def test_flat_delay(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        outcome = await service.handle_error(
            ValueError("webhook handler crashed"), "webhook_processing",
            retry=FlakyOperation(failures=1, error=ValueError("webhook handler crashed")),
        )
        assert outcome.recovered is True
        assert outcome.strategy == RecoveryStrategy.flat_retry
        assert sleep.delays == [1.0, 1.0]


class TestDisabled:

    @pytest.mark.asyncio
    async def test_auto_recovery_disabled(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep, enable_auto_recovery=False)
        retry = FlakyOperation(failures=0)

        outcome = await service.handle_error(TimeoutError(), "order_pull", retry=retry)

        assert outcome.strategy == RecoveryStrategy.disabled
        assert outcome.requires_manual is True
        assert retry.calls == []
        records = await _error_records(session_factory)
        assert records[0].recovery_status == "pending"


class TestBreakerGating:
    """Repeated unrecovered failures open the breaker for that key."""

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(
        self, session_factory, clock, sleep, recorder
    ):
        service = _service(
            session_factory, clock, sleep, recorder,
            breaker_threshold=2, breaker_timeout=60,
        )
        for _ in range(2):
            await service.handle_error(TimeoutError(), "customer_pull")

        retry = FlakyOperation(failures=0)
        outcome = await service.handle_error(TimeoutError(), "customer_pull", retry=retry)

        assert outcome.short_circuited is True
        assert outcome.strategy == RecoveryStrategy.circuit_open
        assert retry.calls == []
        assert recorder.changes == [("customer_pull_timeout", "closed", "open")]

        async with session_factory() as session:
            breaker = (await session.execute(select(CircuitBreakerRecord))).scalar_one()
            last = (await session.execute(
                select(ErrorRecord).where(ErrorRecord.recovery_strategy == "circuit_open")
            )).scalar_one()
        assert breaker.state == "open"
        assert breaker.failure_count == 2
        assert last.next_retry_at == "2026-01-15T12:01:00+00:00"

    @pytest.mark.asyncio
    async def test_other_keys_unaffected(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep, breaker_threshold=1)
        await service.handle_error(TimeoutError(), "customer_pull")

        outcome = await service.handle_error(
            TimeoutError(), "order_pull", retry=FlakyOperation(failures=0)
        )

        assert outcome.recovered is True

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_breaker(
        self, session_factory, clock, sleep, recorder
    ):
        service = _service(
            session_factory, clock, sleep, recorder,
            breaker_threshold=1, breaker_timeout=60,
        )
        await service.handle_error(TimeoutError(), "customer_pull")
        clock.advance(60)

        outcome = await service.handle_error(
            TimeoutError(), "customer_pull", retry=FlakyOperation(failures=0)
        )

        assert outcome.recovered is True
        assert [c[2] for c in recorder.changes] == ["open", "half-open", "closed"]
        async with session_factory() as session:
            breaker = (await session.execute(select(CircuitBreakerRecord))).scalar_one()
        assert breaker.state == "closed"


class TestExecute:

    @pytest.mark.asyncio
    async def test_success_passthrough(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        assert await service.execute("order_pull", FlakyOperation(failures=0)) == "ok"
        assert await _error_records(session_factory) == []

    @pytest.mark.asyncio
    async def test_recovered_result_returned(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        result = await service.execute("order_pull", FlakyOperation(failures=1, result=42))
        assert result == 42

    @pytest.mark.asyncio
    async def test_unrecovered_error_raised(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        with pytest.raises(TimeoutError):
            await service.execute("order_pull", FlakyOperation(failures=10))


class TestStats:

    @pytest.mark.asyncio
    async def test_recovery_stats(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep, breaker_threshold=1)
        await service.handle_error(
            TimeoutError(), "order_pull", retry=FlakyOperation(failures=0)
        )
        await service.handle_error(
            RemoteAuthError("401", status_code=401), "customer_pull"
        )

        stats = await service.get_recovery_stats()

        assert stats["total"] == 2
        assert stats["recovered"] == 1
        assert stats["success_rate"] == 0.5
        assert {(b["category"], b["status"]) for b in stats["breakdown"]} == {
            ("timeout", "recovered"), ("auth", "pending"),
        }
        assert [b["key"] for b in stats["open_breakers"]] == ["customer_pull_auth"]

    @pytest.mark.asyncio
    async def test_context_persisted_redacted(self, session_factory, clock, sleep):
        service = _service(session_factory, clock, sleep)
        await service.handle_error(
            TimeoutError(), "order_pull",
            context={"consumer_secret": "cs_live", "page": 2},
        )
        records = await _error_records(session_factory)
        context = json.loads(records[0].context_json)
        assert context == {"consumer_secret": "***REDACTED***", "page": 2}
