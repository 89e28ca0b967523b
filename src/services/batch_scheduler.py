"""Batch job scheduler with item-level tracking and crash recovery.

Jobs are decomposed into ordered BatchItem rows when queued. A run
processes pending items in sub-batches, committing each item outcome
independently, so a crash mid-job only requires reprocessing pending
and failed items. Periodic sweeps start pending jobs, activate due
scheduled jobs, requeue failed jobs within their retry budget and purge
old finished jobs.

Lifecycle: pending -> running -> completed/failed, scheduled -> pending,
failed -> pending (retry while retry_count < max_retries).
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.cli.config import BatchConfig
from src.db.models import (
    BatchItem,
    BatchJob,
    BatchProgress,
    EntityType,
    ItemStatus,
    ItemType,
    JobStatus,
    JobType,
    generate_uuid,
)
from src.errors.domain import InvalidStateTransition, NotFoundError, ValidationError
from src.services.events import SyncEventEmitter
from src.utils.clock import Clock, parse_iso, to_iso, utc_now
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

ItemHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]

# Valid state transitions for the job lifecycle
VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.scheduled: [JobStatus.pending],
    JobStatus.pending: [JobStatus.running, JobStatus.failed],
    JobStatus.running: [JobStatus.completed, JobStatus.failed, JobStatus.pending],
    JobStatus.failed: [JobStatus.pending],  # retry while budget remains
    JobStatus.completed: [],  # terminal
}

# Higher values run first
DEFAULT_PRIORITY = 100
WEBHOOK_PRIORITY = 200

PENDING_SWEEP_LIMIT = 5
SCHEDULED_SWEEP_LIMIT = 5
RETRY_SWEEP_LIMIT = 10

ENTITY_ITEM_TYPES: dict[EntityType, ItemType] = {
    EntityType.customer: ItemType.customer_sync,
    EntityType.product: ItemType.product_sync,
    EntityType.order: ItemType.order_sync,
}


class JobOptions(BaseModel):
    """Optional overrides for a queued job."""

    priority: int | None = None
    batch_size: int | None = None
    max_retries: int | None = None
    scheduled_at: datetime | None = None


def build_items(job_type: JobType, payload: dict[str, Any]) -> list[tuple[ItemType, dict[str, Any]]]:
    """Derive the ordered work items of a job from its payload.

    Accepted payload shapes:
        items: explicit ``[{"item_type": ..., **payload}]``
        entity_type + remote_ids: one *_sync item per remote id
        product_ids: one inventory_push item per local product id
        event_ids: one webhook_event item per stored event (webhook jobs)
        cleanup jobs: a single cleanup item

    Raises:
        ValidationError: If the payload yields no items.
    """
    items: list[tuple[ItemType, dict[str, Any]]] = []

    for raw in payload.get("items") or []:
        item = dict(raw)
        try:
            item_type = ItemType(item.pop("item_type"))
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid batch item {raw!r}") from e
        items.append((item_type, item))

    if payload.get("entity_type") and payload.get("remote_ids"):
        try:
            entity = EntityType(payload["entity_type"])
        except ValueError as e:
            raise ValidationError(f"Unknown entity type '{payload['entity_type']}'") from e
        for remote_id in payload["remote_ids"]:
            items.append((
                ENTITY_ITEM_TYPES[entity],
                {"entity_type": entity.value, "remote_id": str(remote_id)},
            ))

    for local_id in payload.get("product_ids") or []:
        items.append((ItemType.inventory_push, {"local_id": local_id}))

    if job_type == JobType.webhook:
        for event_id in payload.get("event_ids") or []:
            items.append((ItemType.webhook_event, {"event_id": event_id}))

    if job_type == JobType.cleanup and not items:
        items.append((ItemType.cleanup, {"retention_days": payload.get("retention_days")}))

    if not items:
        raise ValidationError(f"{job_type.value} job payload produced no items")
    return items


class BatchScheduler:
    """Queues, runs and sweeps batch jobs.

    Attributes:
        config: Batch settings (sizes, retry delay, retention).
        emitter: Event channel for job lifecycle events.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: BatchConfig | None = None,
        emitter: SyncEventEmitter | None = None,
        clock: Clock = utc_now,
        handlers: dict[ItemType, ItemHandler] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or BatchConfig()
        self.emitter = emitter or SyncEventEmitter()
        self._clock = clock
        self._handlers: dict[ItemType, ItemHandler] = dict(handlers or {})
        self._stopping = False
        self._task: asyncio.Task | None = None

    def register_handler(self, item_type: ItemType | str, handler: ItemHandler) -> None:
        """Install the coroutine that processes one item type."""
        self._handlers[ItemType(item_type)] = handler

    # =========================================================================
    # Queueing
    # =========================================================================

    async def queue_batch_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        """Create a job and its items.

        Args:
            job_type: sync, webhook or cleanup.
            payload: Job parameters (see build_items).
            options: priority, batch_size, max_retries, scheduled_at.

        Returns:
            The new job id.

        Raises:
            ValidationError: If the payload yields no items.
        """
        job_type = JobType(job_type)
        if isinstance(options, dict):
            options = JobOptions.model_validate(options)
        options = options or JobOptions()
        items = build_items(job_type, payload)

        now = self._clock()
        priority = options.priority
        if priority is None:
            priority = WEBHOOK_PRIORITY if job_type == JobType.webhook else DEFAULT_PRIORITY
        scheduled_at = options.scheduled_at
        if scheduled_at is not None and scheduled_at.tzinfo is None:
            scheduled_at = parse_iso(scheduled_at.isoformat())
        is_scheduled = scheduled_at is not None and scheduled_at > now

        job = BatchJob(
            id=generate_uuid(),
            job_type=job_type.value,
            status=(JobStatus.scheduled if is_scheduled else JobStatus.pending).value,
            priority=priority,
            batch_size=options.batch_size or self.config.batch_size,
            payload_json=json.dumps(payload, default=str),
            total_items=len(items),
            max_retries=(
                options.max_retries if options.max_retries is not None
                else self.config.max_retries
            ),
            next_retry=to_iso(scheduled_at) if is_scheduled else None,
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )
        async with self._session_factory() as session:
            session.add(job)
            for order, (item_type, item_payload) in enumerate(items):
                session.add(BatchItem(
                    job_id=job.id,
                    item_type=item_type.value,
                    status=ItemStatus.pending.value,
                    processing_order=order,
                    payload_json=json.dumps(item_payload, default=str),
                ))
            await session.commit()

        logger.info(
            "Queued %s job %s with %d item(s) (priority=%d, status=%s)",
            job_type.value, job.id, len(items), priority, job.status,
        )
        await self.emitter.emit_job_queued(job.id, job_type.value, len(items))
        return job.id

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        **values: Any,
    ) -> bool:
        """Conditionally move a job between states.

        Returns:
            True if this caller performed the transition.

        Raises:
            InvalidStateTransition: If the lifecycle forbids the move.
        """
        if to_status not in VALID_TRANSITIONS[from_status]:
            raise InvalidStateTransition("BatchJob", from_status, to_status)
        async with self._session_factory() as session:
            result = await session.execute(
                update(BatchJob)
                .where(BatchJob.id == job_id, BatchJob.status == from_status.value)
                .values(status=to_status.value, updated_at=to_iso(self._clock()), **values)
            )
            await session.commit()
        return result.rowcount == 1

    # =========================================================================
    # Processing
    # =========================================================================

    async def _record_item(
        self,
        item_id: str,
        status: ItemStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(BatchItem)
                .where(BatchItem.id == item_id)
                .values(
                    status=status.value,
                    result_json=json.dumps(result, default=str) if result is not None else None,
                    error_message=error,
                    attempts=BatchItem.attempts + 1,
                    processed_at=to_iso(self._clock()),
                )
            )
            await session.commit()

    async def _process_item(self, item: BatchItem) -> bool:
        handler = self._handlers.get(ItemType(item.item_type))
        try:
            if handler is None:
                raise ValidationError(f"No handler registered for '{item.item_type}'")
            payload = json.loads(item.payload_json) if item.payload_json else {}
            result = await handler(payload)
        except Exception as e:
            message = sanitize_error_message(f"{type(e).__name__}: {e}")
            await self._record_item(item.id, ItemStatus.failed, error=message)
            logger.warning(
                "Batch item %s (%s, job %s) failed: %s",
                item.processing_order, item.item_type, item.job_id, e,
            )
            return False
        await self._record_item(item.id, ItemStatus.completed, result=result)
        return True

    async def _item_counts(self, job_id: str) -> dict[str, int]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(BatchItem.status, func.count())
                .where(BatchItem.job_id == job_id)
                .group_by(BatchItem.status)
            )
            return {status: count for status, count in rows.all()}

    async def _publish_progress(
        self, job: BatchJob, stage: str, completed: int, failed: int
    ) -> None:
        done = completed + failed
        percent = round(100.0 * done / job.total_items, 1) if job.total_items else 100.0
        message = f"{done}/{job.total_items} items processed ({failed} failed)"
        async with self._session_factory() as session:
            session.add(BatchProgress(
                job_id=job.id,
                stage=stage,
                percent=percent,
                message=message,
                created_at=to_iso(self._clock()),
            ))
            await session.execute(
                update(BatchJob)
                .where(BatchJob.id == job.id)
                .values(
                    processed_items=completed,
                    failed_items=failed,
                    updated_at=to_iso(self._clock()),
                )
            )
            await session.commit()
        await self.emitter.emit_job_progress(job.id, percent, message)

    async def run_job(self, job_id: str) -> dict[str, Any] | None:
        """Run one pending job to completion or failure.

        Returns:
            Summary dict, or None if another worker claimed the job first.

        Raises:
            NotFoundError: If the job does not exist.
            InvalidStateTransition: If the job is not pending.
        """
        async with self._session_factory() as session:
            job = await session.get(BatchJob, job_id)
            if job is None:
                raise NotFoundError("BatchJob", job_id)
            status = JobStatus(job.status)
            if status != JobStatus.pending:
                raise InvalidStateTransition("BatchJob", status, JobStatus.running)
            result = await session.execute(
                select(BatchItem)
                .where(
                    BatchItem.job_id == job_id,
                    BatchItem.status.in_([ItemStatus.pending.value, ItemStatus.failed.value]),
                )
                .order_by(BatchItem.processing_order.asc())
            )
            items = list(result.scalars().all())

        now = to_iso(self._clock())
        if not await self._transition(
            job_id, JobStatus.pending, JobStatus.running, started_at=now, error_message=None
        ):
            logger.info("Job %s was claimed by another worker", job_id)
            return None
        await self.emitter.emit_job_started(job_id, job.job_type)
        logger.info("Running %s job %s (%d item(s) to process)", job.job_type, job_id, len(items))

        counts = await self._item_counts(job_id)
        completed = counts.get(ItemStatus.completed.value, 0)
        failed = 0
        batch_size = max(1, job.batch_size)
        for start in range(0, len(items), batch_size):
            for item in items[start:start + batch_size]:
                if await self._process_item(item):
                    completed += 1
                else:
                    failed += 1
            await self._publish_progress(job, "processing", completed, failed)

        if failed == 0:
            await self._transition(
                job_id, JobStatus.running, JobStatus.completed,
                completed_at=to_iso(self._clock()),
                processed_items=completed,
                failed_items=0,
                next_retry=None,
            )
            await self._publish_progress(job, "completed", completed, 0)
            logger.info("Job %s completed (%d item(s))", job_id, completed)
            await self.emitter.emit_job_completed(job_id, completed)
            return {"job_id": job_id, "status": JobStatus.completed.value,
                    "processed": completed, "failed": 0}

        error = f"{failed} of {job.total_items} item(s) failed"
        will_retry = await self._fail_job(job_id, error)
        return {"job_id": job_id, "status": JobStatus.failed.value, "processed": completed,
                "failed": failed, "will_retry": will_retry}

    async def _fail_job(self, job_id: str, error: str) -> bool:
        """Mark a running job failed; returns True if a retry is scheduled."""
        async with self._session_factory() as session:
            job = await session.get(BatchJob, job_id)
            if job is None:
                raise NotFoundError("BatchJob", job_id)
            retry_count = job.retry_count
            max_retries = job.max_retries
        will_retry = retry_count < max_retries
        now = self._clock()
        next_retry = (
            to_iso(now + timedelta(seconds=self.config.retry_delay * (2 ** retry_count)))
            if will_retry else None
        )
        await self._transition(
            job_id, JobStatus.running, JobStatus.failed,
            completed_at=to_iso(now),
            error_message=error,
            next_retry=next_retry,
        )
        if will_retry:
            logger.warning(
                "Job %s failed (retry %d/%d at %s): %s",
                job_id, retry_count + 1, max_retries, next_retry, error,
            )
        else:
            logger.error("Job %s failed permanently after %d retries: %s", job_id, retry_count, error)
        await self.emitter.emit_job_failed(job_id, error, retry_count, will_retry)
        return will_retry

    async def retry_job(self, job_id: str) -> bool:
        """Requeue a failed job, resetting its failed items.

        Returns:
            True if the job was requeued; False when the budget is spent or
            the job is not failed.
        """
        async with self._session_factory() as session:
            job = await session.get(BatchJob, job_id)
            if job is None:
                raise NotFoundError("BatchJob", job_id)
            if job.status != JobStatus.failed.value or job.retry_count >= job.max_retries:
                return False
            retry_count = job.retry_count + 1
            await session.execute(
                update(BatchItem)
                .where(
                    BatchItem.job_id == job_id,
                    BatchItem.status == ItemStatus.failed.value,
                )
                .values(status=ItemStatus.pending.value)
            )
            result = await session.execute(
                update(BatchJob)
                .where(BatchJob.id == job_id, BatchJob.status == JobStatus.failed.value)
                .values(
                    status=JobStatus.pending.value,
                    retry_count=retry_count,
                    next_retry=None,
                    failed_items=0,
                    updated_at=to_iso(self._clock()),
                )
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        logger.info("Retrying job %s (retry %d)", job_id, retry_count)
        await self.emitter.emit_job_retried(job_id, retry_count)
        return True

    # =========================================================================
    # Sweeps
    # =========================================================================

    async def process_pending_jobs(self, limit: int = PENDING_SWEEP_LIMIT) -> int:
        """Run up to limit pending jobs, highest priority value first, then oldest."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(BatchJob.id)
                .where(BatchJob.status == JobStatus.pending.value)
                .order_by(BatchJob.priority.desc(), BatchJob.created_at.asc())
                .limit(limit)
            )
            job_ids = list(result.scalars().all())
        ran = 0
        for job_id in job_ids:
            try:
                if await self.run_job(job_id) is not None:
                    ran += 1
            except InvalidStateTransition:
                continue
        return ran

    async def activate_scheduled_jobs(self, limit: int = SCHEDULED_SWEEP_LIMIT) -> int:
        """Move due scheduled jobs to pending."""
        now = to_iso(self._clock())
        async with self._session_factory() as session:
            result = await session.execute(
                select(BatchJob.id)
                .where(
                    BatchJob.status == JobStatus.scheduled.value,
                    BatchJob.next_retry <= now,
                )
                .order_by(BatchJob.priority.desc(), BatchJob.created_at.asc())
                .limit(limit)
            )
            job_ids = list(result.scalars().all())
        activated = 0
        for job_id in job_ids:
            if await self._transition(
                job_id, JobStatus.scheduled, JobStatus.pending, next_retry=None
            ):
                activated += 1
        if activated:
            logger.info("Activated %d scheduled job(s)", activated)
        return activated

    async def retry_failed_jobs(self, limit: int = RETRY_SWEEP_LIMIT) -> int:
        """Requeue failed jobs whose retry time has come."""
        now = to_iso(self._clock())
        async with self._session_factory() as session:
            result = await session.execute(
                select(BatchJob.id)
                .where(
                    BatchJob.status == JobStatus.failed.value,
                    BatchJob.retry_count < BatchJob.max_retries,
                    BatchJob.next_retry.is_not(None),
                    BatchJob.next_retry <= now,
                )
                .order_by(BatchJob.priority.desc(), BatchJob.created_at.asc())
                .limit(limit)
            )
            job_ids = list(result.scalars().all())
        retried = 0
        for job_id in job_ids:
            if await self.retry_job(job_id):
                retried += 1
        return retried

    async def cleanup_old_jobs(self, days: int | None = None) -> dict[str, int]:
        """Delete finished jobs and progress rows older than the retention window."""
        days = self.config.job_retention_days if days is None else days
        cutoff = to_iso(self._clock() - timedelta(days=days))
        async with self._session_factory() as session:
            result = await session.execute(
                select(BatchJob.id).where(
                    BatchJob.completed_at < cutoff,
                    (BatchJob.status == JobStatus.completed.value)
                    | (
                        (BatchJob.status == JobStatus.failed.value)
                        & BatchJob.next_retry.is_(None)
                    ),
                )
            )
            job_ids = list(result.scalars().all())
            if job_ids:
                await session.execute(delete(BatchItem).where(BatchItem.job_id.in_(job_ids)))
                await session.execute(
                    delete(BatchProgress).where(BatchProgress.job_id.in_(job_ids))
                )
                await session.execute(delete(BatchJob).where(BatchJob.id.in_(job_ids)))
            progress = await session.execute(
                delete(BatchProgress).where(BatchProgress.created_at < cutoff)
            )
            await session.commit()
        if job_ids or progress.rowcount:
            logger.info(
                "Cleaned up %d job(s) and %d progress row(s) older than %d days",
                len(job_ids), progress.rowcount, days,
            )
        return {"jobs": len(job_ids), "progress": progress.rowcount}

    async def recover_interrupted_jobs(self) -> int:
        """Return jobs left running by a crash to pending.

        Returns:
            Number of jobs recovered.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(BatchJob)
                .where(BatchJob.status == JobStatus.running.value)
                .values(status=JobStatus.pending.value, updated_at=to_iso(self._clock()))
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Recovered %d interrupted batch job(s)", result.rowcount)
        return result.rowcount

    async def run_cycle(self) -> dict[str, Any]:
        """One scheduler tick: activate, retry, run, clean up."""
        activated = await self.activate_scheduled_jobs()
        retried = await self.retry_failed_jobs()
        ran = await self.process_pending_jobs()
        cleaned = await self.cleanup_old_jobs()
        return {"activated": activated, "retried": retried, "ran": ran, "cleaned": cleaned}

    # =========================================================================
    # Status
    # =========================================================================

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        """Job fields, item counts by status and the latest progress.

        Raises:
            NotFoundError: If the job does not exist.
        """
        async with self._session_factory() as session:
            job = await session.get(BatchJob, job_id)
            if job is None:
                raise NotFoundError("BatchJob", job_id)
            latest = await session.execute(
                select(BatchProgress)
                .where(BatchProgress.job_id == job_id)
                .order_by(BatchProgress.created_at.desc(), BatchProgress.percent.desc())
                .limit(1)
            )
            progress = latest.scalar_one_or_none()
        item_counts = await self._item_counts(job_id)
        return {
            "id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "priority": job.priority,
            "batch_size": job.batch_size,
            "total_items": job.total_items,
            "processed_items": job.processed_items,
            "failed_items": job.failed_items,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "next_retry": job.next_retry,
            "error_message": job.error_message,
            "created_at": job.created_at,
            "started_at": job.started_at,
            "completed_at": job.completed_at,
            "item_counts": item_counts,
            "progress": (
                {
                    "stage": progress.stage,
                    "percent": progress.percent,
                    "message": progress.message,
                    "created_at": progress.created_at,
                }
                if progress is not None else None
            ),
        }

    # =========================================================================
    # Background loop
    # =========================================================================

    async def _run(self) -> None:
        logger.info("Batch scheduler loop started")
        while not self._stopping:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error("Batch scheduler cycle failed: %s", e)
            for _ in range(int(self.config.processing_interval * 10)):
                if self._stopping:
                    break
                await asyncio.sleep(0.1)
        logger.info("Batch scheduler loop stopped")

    def start(self) -> None:
        """Start the periodic sweep loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the sweep loop after the current cycle."""
        self._stopping = True
        if self._task is not None:
            await self._task
            self._task = None
