"""Durable webhook ingestion queue.

Inbound change notifications are validated (topic, source allowlist,
rate limit, HMAC signature), persisted once per idempotency key and
drained by a single background loop into the sync engine's per-record
reconciliation. Events survive process crashes; pending events are
picked up again on restart.

Failed events are retried with exponential backoff persisted in
next_attempt_at, so strict FIFO only holds among first attempts.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from collections import deque
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cli.config import WebhookConfig
from src.db.models import EntityType, WebhookEvent, WebhookStatus, generate_uuid
from src.db.upsert import insert_ignore
from src.errors.domain import (
    NotFoundError,
    RateLimitExceeded,
    SignatureVerificationError,
    UnsupportedEventError,
    ValidationError,
)
from src.services.events import SyncEventEmitter
from src.services.idempotency import generate_idempotency_key, payload_hash
from src.services.sync_engine import SyncEngine
from src.utils.clock import Clock, to_iso, utc_now
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

WEBHOOK_RESOURCES = ("customer", "product", "order", "coupon")
WEBHOOK_ACTIONS = ("created", "updated", "deleted")
SUPPORTED_EVENTS = frozenset(
    f"{resource}.{action}" for resource in WEBHOOK_RESOURCES for action in WEBHOOK_ACTIONS
)

DRAIN_BATCH_SIZE = 50


class SlidingWindowRateLimiter:
    """Per-key request budget over a sliding time window.

    Keys with no hit inside the window are dropped once per window so the
    table only holds recently active sources.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._next_sweep = clock() + window_seconds

    def allow(self, key: str | None) -> bool:
        """Record a hit for key; return False if it exceeds the budget.

        A missing key (unknown source) is always allowed.
        """
        if key is None:
            return True
        now = self._clock()
        cutoff = now - self.window_seconds
        if now >= self._next_sweep:
            self._sweep(cutoff)
            self._next_sweep = now + self.window_seconds
        hits = self._hits.setdefault(key, deque())
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    def _sweep(self, cutoff: float) -> None:
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]


def compute_signature(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of a request body, as WooCommerce sends it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    payload: dict[str, Any],
    signature: str | None,
    secret: str | None,
    raw_body: bytes | None = None,
) -> bool:
    """Check a webhook signature in constant time.

    Args:
        payload: Parsed payload, signed as compact JSON when no raw body.
        signature: Header value, optionally prefixed with ``sha256=``.
        secret: Shared secret; verification is skipped when empty.
        raw_body: Exact request bytes, preferred when available.

    Returns:
        True if the signature matches or no secret is configured.
    """
    if not secret:
        return True
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    body = raw_body if raw_body is not None else json.dumps(
        payload, separators=(",", ":")
    ).encode("utf-8")
    expected = compute_signature(body, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace"))


class WebhookQueue:
    """Validates, persists and drains inbound webhook events.

    Attributes:
        engine: Sync engine used for per-record reconciliation.
        config: Webhook settings (secret, rate limit, retry budget).
        rate_limiter: Sliding-window limiter keyed by source IP.
        emitter: Event channel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: SyncEngine,
        config: WebhookConfig | None = None,
        emitter: SyncEventEmitter | None = None,
        clock: Clock = utc_now,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.engine = engine
        self.config = config or WebhookConfig()
        self.emitter = emitter or SyncEventEmitter()
        self._clock = clock
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            self.config.rate_limit, self.config.rate_window_seconds
        )
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._task: asyncio.Task | None = None

    # =========================================================================
    # Intake
    # =========================================================================

    async def process_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        signature: str | None = None,
        source_ip: str | None = None,
        raw_body: bytes | None = None,
    ) -> dict[str, str]:
        """Validate and enqueue one webhook delivery.

        Args:
            event_type: Topic such as ``order.updated``.
            payload: Parsed JSON payload.
            signature: Signature header value, if sent.
            source_ip: Sender address, if known.
            raw_body: Exact request bytes for signature verification.

        Returns:
            ``{"event_id": ..., "status": "pending" | "duplicate"}``.

        Raises:
            UnsupportedEventError: If the topic is not handled.
            ValidationError: If the source IP is not allowlisted.
            RateLimitExceeded: If the source exceeded its budget.
            SignatureVerificationError: If the signature does not match.
        """
        if event_type not in SUPPORTED_EVENTS:
            raise UnsupportedEventError(event_type)
        if self.config.allowed_ips and source_ip not in self.config.allowed_ips:
            logger.warning("Rejected webhook %s from %s: not allowlisted", event_type, source_ip)
            raise ValidationError(f"Source IP '{source_ip}' is not allowed")
        if not self.rate_limiter.allow(source_ip):
            logger.warning("Rate limited webhook %s from %s", event_type, source_ip)
            raise RateLimitExceeded(
                source_ip or "unknown", self.config.rate_limit, self.config.rate_window_seconds
            )

        digest = payload_hash(payload)
        resource_id = str(payload["id"]) if payload.get("id") is not None else None
        now = to_iso(self._clock())
        values: dict[str, Any] = {
            "event_type": event_type,
            "resource_id": resource_id,
            "payload_json": json.dumps(payload, default=str),
            "payload_hash": digest,
            "signature": signature,
            "source_ip": source_ip,
            "received_at": now,
            "next_attempt_at": now,
            "retry_count": 0,
        }

        if not verify_signature(payload, signature, self.config.secret, raw_body):
            event_id = await self._persist_rejected(values, "Invalid webhook signature")
            await self.emitter.emit_webhook_failed(
                event_id, event_type, "Invalid webhook signature", False
            )
            logger.warning("Webhook %s failed signature verification (%s)", event_type, event_id)
            raise SignatureVerificationError(event_id)

        key = generate_idempotency_key(event_type, resource_id, digest)
        async with self._session_factory() as session:
            event_id = await insert_ignore(
                session,
                WebhookEvent.__table__,
                {
                    "id": generate_uuid(),
                    **values,
                    "idempotency_key": key,
                    "status": WebhookStatus.pending.value,
                },
                conflict_columns=["idempotency_key"],
            )
            if event_id is None:
                existing = await session.scalar(
                    select(WebhookEvent.id).where(WebhookEvent.idempotency_key == key)
                )
                logger.info("Duplicate webhook %s for %s ignored", event_type, resource_id)
                return {"event_id": existing, "status": "duplicate"}
            await session.commit()

        logger.info("Queued webhook %s %s (resource=%s)", event_type, event_id, resource_id)
        await self.emitter.emit_webhook_received(event_id, event_type)
        self._wakeup.set()
        return {"event_id": event_id, "status": WebhookStatus.pending.value}

    async def _persist_rejected(self, values: dict[str, Any], reason: str) -> str:
        event_id = generate_uuid()
        event = WebhookEvent(**{
            **values,
            "id": event_id,
            "idempotency_key": None,
            "status": WebhookStatus.failed.value,
            "next_attempt_at": None,
            "error_message": reason,
        })
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()
        return event_id

    # =========================================================================
    # Processing
    # =========================================================================

    async def _dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        resource, action = event_type.split(".", 1)
        if resource == "coupon":
            # No local coupon entity; acknowledge
            return
        entity = EntityType(resource)
        if action == "deleted":
            if payload.get("id") is None:
                raise ValueError(f"{event_type} payload has no id")
            await self.engine.deactivate_remote_deletion(entity, payload["id"])
            return
        await self.engine.reconcile_record(entity, payload, allow_conflicts=False)

    async def _mark_processed(self, event_id: str, event_type: str, started: float) -> None:
        now = to_iso(self._clock())
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(
                    status=WebhookStatus.processed.value,
                    processed_at=now,
                    next_attempt_at=None,
                    error_message=None,
                )
            )
            await session.commit()
        duration_ms = (time.monotonic() - started) * 1000
        logger.info("Processed webhook %s %s in %.0fms", event_type, event_id, duration_ms)
        await self.emitter.emit_webhook_processed(event_id, event_type, duration_ms)

    async def _mark_failed(self, event: WebhookEvent, error: Exception) -> bool:
        """Record a processing failure; returns True if the event will retry."""
        retry_count = (event.retry_count or 0) + 1
        will_retry = retry_count < self.config.max_attempts
        message = sanitize_error_message(f"{type(error).__name__}: {error}")
        values: dict[str, Any] = {"retry_count": retry_count, "error_message": message}
        if will_retry:
            values["status"] = WebhookStatus.pending.value
            values["next_attempt_at"] = to_iso(
                self._clock() + timedelta(seconds=2 ** retry_count)
            )
            logger.info(
                "Webhook %s failed (will retry %d/%d): %s",
                event.id, retry_count, self.config.max_attempts, error,
            )
        else:
            values["status"] = WebhookStatus.failed.value
            values["next_attempt_at"] = None
            logger.warning(
                "Webhook %s failed permanently after %d attempts: %s",
                event.id, retry_count, error,
            )
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent).where(WebhookEvent.id == event.id).values(**values)
            )
            await session.commit()
        await self.emitter.emit_webhook_failed(
            event.id, event.event_type, message or str(error), will_retry
        )
        return will_retry

    async def _process_event(self, event: WebhookEvent) -> bool:
        started = time.monotonic()
        try:
            await self._dispatch(event.event_type, json.loads(event.payload_json))
        except Exception as e:
            await self._mark_failed(event, e)
            return False
        await self._mark_processed(event.id, event.event_type, started)
        return True

    async def drain_once(self, limit: int = DRAIN_BATCH_SIZE) -> dict[str, int]:
        """Process due pending events in receipt order.

        Returns:
            Dict with processed and failed counts.
        """
        now = to_iso(self._clock())
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.pending.value,
                    or_(
                        WebhookEvent.next_attempt_at.is_(None),
                        WebhookEvent.next_attempt_at <= now,
                    ),
                )
                .order_by(WebhookEvent.received_at.asc())
                .limit(limit)
            )
            events = list(result.scalars().all())

        processed = 0
        failed = 0
        for event in events:
            if await self._process_event(event):
                processed += 1
            else:
                failed += 1
        if events:
            logger.debug("Drained %d webhook event(s): %d failed", len(events), failed)
        return {"processed": processed, "failed": failed}

    async def replay_event(self, event_id: str) -> bool:
        """Re-run processing for one stored event regardless of its status.

        Returns:
            True on success.

        Raises:
            NotFoundError: If the event does not exist.
            Exception: The processing error, after recording it.
        """
        async with self._session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
        if event is None:
            raise NotFoundError("WebhookEvent", event_id)
        started = time.monotonic()
        try:
            await self._dispatch(event.event_type, json.loads(event.payload_json))
        except Exception as e:
            await self._mark_failed(event, e)
            raise
        await self._mark_processed(event.id, event.event_type, started)
        return True

    # =========================================================================
    # Background loop
    # =========================================================================

    async def _run(self) -> None:
        logger.info("Webhook drain loop started")
        while not self._stopping:
            try:
                await self.drain_once()
            except Exception as e:
                logger.error("Webhook drain cycle failed: %s", e)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
            except TimeoutError:
                pass
            self._wakeup.clear()
        logger.info("Webhook drain loop stopped")

    def start(self) -> None:
        """Start the drain loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the drain loop after the current cycle."""
        self._stopping = True
        self._wakeup.set()
        if self._task is not None:
            await self._task
            self._task = None

    # =========================================================================
    # Queries and maintenance
    # =========================================================================

    async def get_webhook_stats(self) -> dict[str, Any]:
        """Counts by status and topic plus the oldest pending receipt time."""
        async with self._session_factory() as session:
            by_status = await session.execute(
                select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
            )
            by_type = await session.execute(
                select(WebhookEvent.event_type, func.count()).group_by(WebhookEvent.event_type)
            )
            oldest = await session.scalar(
                select(func.min(WebhookEvent.received_at)).where(
                    WebhookEvent.status == WebhookStatus.pending.value
                )
            )
        status_counts = {status: count for status, count in by_status.all()}
        return {
            "total": sum(status_counts.values()),
            "pending": status_counts.get(WebhookStatus.pending.value, 0),
            "processed": status_counts.get(WebhookStatus.processed.value, 0),
            "failed": status_counts.get(WebhookStatus.failed.value, 0),
            "by_event_type": {event_type: count for event_type, count in by_type.all()},
            "oldest_pending_at": oldest,
        }

    async def get_failed_events(self, limit: int = 50) -> list[WebhookEvent]:
        """Failed, accepted events still within the replay budget, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.status == WebhookStatus.failed.value,
                    WebhookEvent.idempotency_key.is_not(None),
                    WebhookEvent.retry_count < self.config.max_replays,
                )
                .order_by(WebhookEvent.received_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def retry_failed_events(self, limit: int = 100) -> int:
        """Requeue failed events within the replay budget.

        Returns:
            Number of events reset to pending.
        """
        event_ids = [e.id for e in await self.get_failed_events(limit)]
        if not event_ids:
            return 0
        now = to_iso(self._clock())
        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id.in_(event_ids))
                .values(
                    status=WebhookStatus.pending.value,
                    retry_count=WebhookEvent.retry_count + 1,
                    next_attempt_at=now,
                )
            )
            await session.commit()
        logger.info("Requeued %d failed webhook event(s)", result.rowcount)
        self._wakeup.set()
        return result.rowcount
