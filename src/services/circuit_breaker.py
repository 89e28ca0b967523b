"""Circuit breakers keyed by (operation type, error category).

State machine:
    closed    --failure_count reaches threshold-->  open
    open      --next_attempt elapsed-->             half-open (one trial)
    half-open --trial succeeds-->                   closed (failure_count = 0)
    half-open --trial fails-->                      open (cooldown restarts)

While open (and while a half-open trial is in flight) allow_request()
returns False, short-circuiting recovery for that key.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.db.models import BreakerState
from src.utils.clock import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

StateChangeHook = Callable[["CircuitBreaker", BreakerState, BreakerState], Awaitable[None]]


@dataclass
class BreakerSnapshot:
    """Serializable view of one breaker."""

    service_name: str
    operation_name: str
    state: BreakerState
    failure_count: int
    failure_threshold: int
    last_failure: str | None
    next_attempt: str | None


class CircuitBreaker:
    """One circuit breaker.

    Attributes:
        service_name: First key part (operation type, e.g. customer_pull).
        operation_name: Second key part (error category).
        failure_threshold: Consecutive failures that open the breaker.
        reset_timeout: Cooldown in seconds before a half-open trial.
    """

    def __init__(
        self,
        service_name: str,
        operation_name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
        clock: Clock = utc_now,
        on_state_change: StateChangeHook | None = None,
    ) -> None:
        self.service_name = service_name
        self.operation_name = operation_name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._on_state_change = on_state_change
        self.state = BreakerState.closed
        self.failure_count = 0
        self.last_failure: datetime | None = None
        self.next_attempt: datetime | None = None
        self._trial_in_flight = False

    @property
    def key(self) -> str:
        return f"{self.service_name}_{self.operation_name}"

    async def _transition(self, new_state: BreakerState) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        logger.warning(
            "Circuit breaker %s: %s -> %s", self.key, old_state.value, new_state.value
        )
        if self._on_state_change is not None:
            try:
                await self._on_state_change(self, old_state, new_state)
            except Exception as e:
                logger.error("Breaker state hook failed for %s: %s", self.key, e)

    async def allow_request(self) -> bool:
        """Return True if a recovery attempt may proceed now.

        An open breaker whose cooldown elapsed moves to half-open and admits
        exactly one trial; concurrent callers are refused until the trial
        reports back.
        """
        if self.state == BreakerState.closed:
            return True
        if self.state == BreakerState.open:
            if self.next_attempt is not None and self._clock() >= self.next_attempt:
                await self._transition(BreakerState.half_open)
                self._trial_in_flight = True
                return True
            return False
        # half-open
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    async def record_success(self) -> None:
        """Reset the failure count; a half-open trial closes the breaker."""
        self._trial_in_flight = False
        self.failure_count = 0
        self.next_attempt = None
        if self.state != BreakerState.closed:
            await self._transition(BreakerState.closed)

    async def record_failure(self) -> None:
        """Count a failure; open at threshold or after a failed trial."""
        now = self._clock()
        self._trial_in_flight = False
        self.failure_count += 1
        self.last_failure = now
        if self.state == BreakerState.half_open or self.failure_count >= self.failure_threshold:
            self.next_attempt = now + timedelta(seconds=self.reset_timeout)
            await self._transition(BreakerState.open)

    async def reset(self) -> None:
        """Force the breaker closed (operator action)."""
        self.failure_count = 0
        self.next_attempt = None
        self._trial_in_flight = False
        await self._transition(BreakerState.closed)

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            service_name=self.service_name,
            operation_name=self.operation_name,
            state=self.state,
            failure_count=self.failure_count,
            failure_threshold=self.failure_threshold,
            last_failure=to_iso(self.last_failure) if self.last_failure else None,
            next_attempt=to_iso(self.next_attempt) if self.next_attempt else None,
        )


class CircuitBreakerRegistry:
    """Creates and holds one breaker per (service, operation) key."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
        clock: Clock = utc_now,
        on_state_change: StateChangeHook | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}

    def set_state_change_hook(self, hook: StateChangeHook | None) -> None:
        """Install the hook on the registry and every existing breaker."""
        self._on_state_change = hook
        for breaker in self._breakers.values():
            breaker._on_state_change = hook

    def get(self, service_name: str, operation_name: str) -> CircuitBreaker:
        """Return the breaker for a key, creating it closed on first use."""
        key = (service_name, operation_name)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                service_name,
                operation_name,
                failure_threshold=self.failure_threshold,
                reset_timeout=self.reset_timeout,
                clock=self._clock,
                on_state_change=self._on_state_change,
            )
            self._breakers[key] = breaker
        return breaker

    def snapshots(self) -> list[BreakerSnapshot]:
        return [b.snapshot() for b in self._breakers.values()]

    def open_breakers(self) -> list[BreakerSnapshot]:
        return [
            b.snapshot() for b in self._breakers.values()
            if b.state != BreakerState.closed
        ]
