"""Retention cleanup for sync history, webhooks and monitoring data."""

import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import (
    AlertStatus,
    MonitoringAlert,
    PerformanceLog,
    SyncSession,
    SyncSessionStatus,
    WebhookEvent,
    WebhookStatus,
)
from src.utils.clock import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


class RetentionService:
    """Deletes records older than the retention window."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.retention_days = retention_days
        self._clock = clock

    async def cleanup(self, retention_days: int | None = None) -> dict[str, int]:
        """Remove finished sync sessions, processed webhooks, performance
        logs and resolved alerts older than retention_days.

        Returns:
            Deleted row counts per table.
        """
        days = self.retention_days if retention_days is None else retention_days
        cutoff = to_iso(self._clock() - timedelta(days=days))
        async with self._session_factory() as session:
            sessions = await session.execute(
                delete(SyncSession).where(
                    SyncSession.status != SyncSessionStatus.running.value,
                    SyncSession.started_at < cutoff,
                )
            )
            webhooks = await session.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.status == WebhookStatus.processed.value,
                    WebhookEvent.received_at < cutoff,
                )
            )
            perf = await session.execute(
                delete(PerformanceLog).where(PerformanceLog.created_at < cutoff)
            )
            alerts = await session.execute(
                delete(MonitoringAlert).where(
                    MonitoringAlert.status == AlertStatus.resolved.value,
                    MonitoringAlert.created_at < cutoff,
                )
            )
            await session.commit()

        counts = {
            "sync_sessions": sessions.rowcount,
            "webhook_events": webhooks.rowcount,
            "performance_logs": perf.rowcount,
            "monitoring_alerts": alerts.rowcount,
        }
        logger.info("Retention cleanup (%d days): %s", days, counts)
        return counts
