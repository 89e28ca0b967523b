"""Monitoring and alerting for the sync services.

MonitoringService observes the event channel, aggregates in-memory
metrics (sync, webhooks, conflicts, remote API, jobs), persists
performance samples and raises threshold alerts. Alerts are deduplicated
while active and resolve automatically once the metric is back under
its threshold.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cli.config import MonitoringConfig
from src.db.models import (
    AlertSeverity,
    AlertStatus,
    BatchJob,
    ConflictStatus,
    MonitoringAlert,
    PerformanceLog,
    SyncConflict,
    SyncSession,
    SyncSessionStatus,
    WebhookEvent,
    WebhookStatus,
)
from src.services.events import SyncEventEmitter
from src.utils.clock import Clock, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

ALERT_SYNC_FAILURE_RATE = "sync_failure_rate"
ALERT_API_RESPONSE_TIME = "api_response_time"
ALERT_CONFLICT_RATE = "conflict_rate"
ALERT_WEBHOOK_DELAY = "webhook_delay"
ALERT_SYNC_DELAY = "sync_delay"


def _running_average(average: float, count: int, sample: float) -> float:
    return average + (sample - average) / count


class MonitoringService:
    """Event observer that aggregates metrics and raises alerts.

    Register with ``emitter.add_observer(monitor)``; pass
    ``monitor.record_api_call`` as the remote client's response hook.

    Attributes:
        config: Alert thresholds.
        metrics: Live counters grouped by area.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: MonitoringConfig | None = None,
        emitter: SyncEventEmitter | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or MonitoringConfig()
        self.emitter = emitter or SyncEventEmitter()
        self._clock = clock
        self._last_sync_success: datetime | None = None
        self._breaker_states: dict[str, str] = {}
        self._stopping = False
        self._task: asyncio.Task | None = None
        self.metrics: dict[str, dict[str, Any]] = {
            "sync": {
                "total": 0, "successful": 0, "failed": 0,
                "avg_duration_ms": 0.0, "records_processed": 0, "last_success": None,
            },
            "webhooks": {"total": 0, "processed": 0, "failed": 0},
            "conflicts": {"total": 0, "auto_resolved": 0, "manual": 0},
            "api": {"calls": 0, "failures": 0, "avg_response_ms": 0.0, "rate_limit_hits": 0},
            "jobs": {"queued": 0, "completed": 0, "failed": 0},
            "recovery": {"attempts": 0, "recovered": 0},
        }

    # =========================================================================
    # Observer hooks
    # =========================================================================

    async def on_sync_completed(
        self, sync_id: str, results: dict[str, Any], duration_ms: float
    ) -> None:
        sync = self.metrics["sync"]
        sync["total"] += 1
        sync["successful"] += 1
        sync["avg_duration_ms"] = _running_average(
            sync["avg_duration_ms"], sync["successful"], duration_ms
        )
        for entity in (results.get("entities") or {}).values():
            sync["records_processed"] += (
                entity.get("pulled", 0) + entity.get("pushed", 0) + entity.get("unchanged", 0)
            )
        self._last_sync_success = self._clock()
        sync["last_success"] = to_iso(self._last_sync_success)
        await self.log_performance("full_sync", duration_ms, True, {"sync_id": sync_id})

    async def on_sync_failed(self, sync_id: str, error: str) -> None:
        self.metrics["sync"]["total"] += 1
        self.metrics["sync"]["failed"] += 1

    async def on_webhook_received(self, event_id: str, event_type: str) -> None:
        self.metrics["webhooks"]["total"] += 1

    async def on_webhook_processed(
        self, event_id: str, event_type: str, duration_ms: float
    ) -> None:
        self.metrics["webhooks"]["processed"] += 1
        await self.log_performance(f"webhook:{event_type}", duration_ms, True)

    async def on_webhook_failed(
        self, event_id: str, event_type: str, error: str, will_retry: bool
    ) -> None:
        self.metrics["webhooks"]["failed"] += 1

    async def on_conflict_detected(
        self,
        sync_id: str | None,
        entity_type: str,
        entity_id: str,
        field_name: str,
        conflict_type: str,
    ) -> None:
        conflicts = self.metrics["conflicts"]
        conflicts["total"] += 1
        conflicts["manual"] = conflicts["total"] - conflicts["auto_resolved"]

    async def on_conflict_resolved(
        self, conflict_id: str, strategy: str, auto_resolved: bool
    ) -> None:
        if auto_resolved:
            conflicts = self.metrics["conflicts"]
            conflicts["auto_resolved"] += 1
            conflicts["manual"] = conflicts["total"] - conflicts["auto_resolved"]

    async def on_circuit_state_changed(self, key: str, old_state: str, new_state: str) -> None:
        self._breaker_states[key] = new_state

    async def on_recovery_attempted(
        self, category: str, strategy: str, success: bool, duration_ms: float
    ) -> None:
        self.metrics["recovery"]["attempts"] += 1
        if success:
            self.metrics["recovery"]["recovered"] += 1

    async def on_job_queued(self, job_id: str, job_type: str, total_items: int) -> None:
        self.metrics["jobs"]["queued"] += 1

    async def on_job_completed(self, job_id: str, processed_items: int) -> None:
        self.metrics["jobs"]["completed"] += 1

    async def on_job_failed(
        self, job_id: str, error_message: str, retry_count: int, will_retry: bool
    ) -> None:
        self.metrics["jobs"]["failed"] += 1

    def record_api_call(self, endpoint: str, duration_ms: float, status_code: int | None) -> None:
        """Remote client response hook."""
        api = self.metrics["api"]
        api["calls"] += 1
        api["avg_response_ms"] = _running_average(api["avg_response_ms"], api["calls"], duration_ms)
        if status_code is None or status_code >= 400:
            api["failures"] += 1
        if status_code == 429:
            api["rate_limit_hits"] += 1

    # =========================================================================
    # Persistence
    # =========================================================================

    async def log_performance(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Persist one timing sample."""
        async with self._session_factory() as session:
            session.add(PerformanceLog(
                operation=operation,
                duration_ms=duration_ms,
                success=success,
                details_json=json.dumps(details, default=str) if details else None,
                created_at=to_iso(self._clock()),
            ))
            await session.commit()

    # =========================================================================
    # Alerts
    # =========================================================================

    async def _raise_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        message: str,
        value: float,
        threshold: float,
    ) -> bool:
        """Create an alert unless one of the same type is already active."""
        async with self._session_factory() as session:
            active = await session.scalar(
                select(MonitoringAlert.id).where(
                    MonitoringAlert.alert_type == alert_type,
                    MonitoringAlert.status == AlertStatus.active.value,
                ).limit(1)
            )
            if active is not None:
                await session.execute(
                    update(MonitoringAlert)
                    .where(MonitoringAlert.id == active)
                    .values(value=value, message=message)
                )
                await session.commit()
                return False
            session.add(MonitoringAlert(
                alert_type=alert_type,
                severity=severity.value,
                message=message,
                value=value,
                threshold=threshold,
                status=AlertStatus.active.value,
                created_at=to_iso(self._clock()),
            ))
            await session.commit()
        logger.warning("Alert raised [%s] %s: %s", severity.value, alert_type, message)
        await self.emitter.emit_alert_created(alert_type, severity.value, message)
        return True

    async def _resolve_alert(self, alert_type: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(MonitoringAlert)
                .where(
                    MonitoringAlert.alert_type == alert_type,
                    MonitoringAlert.status == AlertStatus.active.value,
                )
                .values(status=AlertStatus.resolved.value, resolved_at=to_iso(self._clock()))
            )
            await session.commit()
        if result.rowcount:
            logger.info("Alert %s resolved", alert_type)
        return result.rowcount

    async def _evaluate(
        self,
        alert_type: str,
        severity: AlertSeverity,
        value: float | None,
        threshold: float,
        message: str,
    ) -> bool:
        if value is not None and value > threshold:
            return await self._raise_alert(alert_type, severity, message, value, threshold)
        await self._resolve_alert(alert_type)
        return False

    async def _oldest_pending_webhook_age(self) -> float | None:
        async with self._session_factory() as session:
            oldest = await session.scalar(
                select(func.min(WebhookEvent.received_at)).where(
                    WebhookEvent.status == WebhookStatus.pending.value
                )
            )
        received = parse_iso(oldest)
        if received is None:
            return None
        return (self._clock() - received).total_seconds()

    async def _last_successful_sync(self) -> datetime | None:
        if self._last_sync_success is not None:
            return self._last_sync_success
        async with self._session_factory() as session:
            completed_at = await session.scalar(
                select(func.max(SyncSession.completed_at)).where(
                    SyncSession.status == SyncSessionStatus.completed.value
                )
            )
        return parse_iso(completed_at)

    async def check_thresholds(self) -> list[str]:
        """Evaluate every threshold.

        Returns:
            Alert types newly raised by this check.
        """
        raised: list[str] = []
        sync = self.metrics["sync"]
        api = self.metrics["api"]
        conflicts = self.metrics["conflicts"]

        failure_rate = sync["failed"] / sync["total"] if sync["total"] else None
        if await self._evaluate(
            ALERT_SYNC_FAILURE_RATE, AlertSeverity.warning, failure_rate,
            self.config.failure_rate,
            f"Sync failure rate {failure_rate or 0:.1%} exceeds {self.config.failure_rate:.1%}",
        ):
            raised.append(ALERT_SYNC_FAILURE_RATE)

        avg_response = api["avg_response_ms"] if api["calls"] else None
        if await self._evaluate(
            ALERT_API_RESPONSE_TIME, AlertSeverity.warning, avg_response,
            self.config.avg_response_time_ms,
            f"Average API response time {avg_response or 0:.0f}ms exceeds "
            f"{self.config.avg_response_time_ms:.0f}ms",
        ):
            raised.append(ALERT_API_RESPONSE_TIME)

        records = sync["records_processed"]
        conflict_rate = conflicts["total"] / records if records else None
        if await self._evaluate(
            ALERT_CONFLICT_RATE, AlertSeverity.info, conflict_rate,
            self.config.conflict_rate,
            f"Conflict rate {conflict_rate or 0:.1%} exceeds {self.config.conflict_rate:.1%}",
        ):
            raised.append(ALERT_CONFLICT_RATE)

        webhook_age = await self._oldest_pending_webhook_age()
        if await self._evaluate(
            ALERT_WEBHOOK_DELAY, AlertSeverity.warning, webhook_age,
            self.config.webhook_delay_seconds,
            f"Oldest pending webhook is {webhook_age or 0:.0f}s old",
        ):
            raised.append(ALERT_WEBHOOK_DELAY)

        last_success = await self._last_successful_sync()
        sync_age = (self._clock() - last_success).total_seconds() if last_success else None
        if await self._evaluate(
            ALERT_SYNC_DELAY, AlertSeverity.warning, sync_age,
            self.config.sync_delay_seconds,
            f"Last successful sync was {sync_age or 0:.0f}s ago",
        ):
            raised.append(ALERT_SYNC_DELAY)

        return raised

    # =========================================================================
    # Dashboard
    # =========================================================================

    async def get_dashboard_data(self) -> dict[str, Any]:
        """Metrics, active alerts and recent activity in one snapshot."""
        async with self._session_factory() as session:
            alerts = await session.execute(
                select(MonitoringAlert)
                .where(MonitoringAlert.status == AlertStatus.active.value)
                .order_by(MonitoringAlert.created_at.desc())
            )
            sessions = await session.execute(
                select(SyncSession).order_by(SyncSession.started_at.desc()).limit(10)
            )
            webhook_counts = await session.execute(
                select(WebhookEvent.status, func.count()).group_by(WebhookEvent.status)
            )
            job_counts = await session.execute(
                select(BatchJob.status, func.count()).group_by(BatchJob.status)
            )
            pending_conflicts = await session.scalar(
                select(func.count()).select_from(SyncConflict).where(
                    SyncConflict.status == ConflictStatus.pending.value
                )
            )
            since = to_iso(self._clock() - timedelta(hours=24))
            performance = await session.execute(
                select(
                    PerformanceLog.operation,
                    func.count(),
                    func.avg(PerformanceLog.duration_ms),
                )
                .where(PerformanceLog.created_at >= since)
                .group_by(PerformanceLog.operation)
            )

            return {
                "metrics": json.loads(json.dumps(self.metrics, default=str)),
                "alerts": [
                    {
                        "id": a.id,
                        "alert_type": a.alert_type,
                        "severity": a.severity,
                        "message": a.message,
                        "value": a.value,
                        "threshold": a.threshold,
                        "created_at": a.created_at,
                    }
                    for a in alerts.scalars().all()
                ],
                "recent_syncs": [
                    {
                        "sync_id": s.sync_id,
                        "status": s.status,
                        "started_at": s.started_at,
                        "completed_at": s.completed_at,
                    }
                    for s in sessions.scalars().all()
                ],
                "webhooks": {status: count for status, count in webhook_counts.all()},
                "jobs": {status: count for status, count in job_counts.all()},
                "pending_conflicts": int(pending_conflicts or 0),
                "circuit_breakers": dict(self._breaker_states),
                "performance": {
                    operation: {"count": count, "avg_duration_ms": float(avg or 0.0)}
                    for operation, count, avg in performance.all()
                },
            }

    # =========================================================================
    # Background loop
    # =========================================================================

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.check_thresholds()
            except Exception as e:
                logger.error("Threshold check failed: %s", e)
            for _ in range(int(self.config.check_interval * 10)):
                if self._stopping:
                    break
                await asyncio.sleep(0.1)

    def start(self) -> None:
        """Start periodic threshold checks (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop periodic threshold checks."""
        self._stopping = True
        if self._task is not None:
            await self._task
            self._task = None
