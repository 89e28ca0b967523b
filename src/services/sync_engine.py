"""Full-sync orchestration between the local store and WooCommerce.

A sync session pulls customers, products and orders page by page,
reconciling each remote record against its local twin, then pushes
inventory, products and customers for mapped records. Sessions are
mutually exclusive per scope and reach a terminal status exactly once.

Record-level reconciliation (reconcile_record) is shared with the
webhook queue and batch item handlers.
"""

import asyncio
import functools
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.clients.base import RemotePlatformClient
from src.db.models import (
    EntityMapping,
    EntityType,
    SyncDirection,
    SyncSession,
    SyncSessionStatus,
    generate_uuid,
)
from src.db.upsert import upsert
from src.errors.domain import (
    CircuitOpenError,
    NotFoundError,
    SyncAbortedError,
    SyncInProgressError,
)
from src.errors.registry import ErrorCategory
from src.services.conflict_resolver import ConflictResolver, values_equal
from src.services.entity_transforms import (
    LOCAL_MODELS,
    NATURAL_KEY_COLUMNS,
    apply_resolved_values,
    column_value,
    has_changes,
    inventory_payload,
    local_snapshot,
    local_to_remote,
    natural_key,
    remote_modified_at,
    remote_to_local,
)
from src.services.error_recovery import ErrorRecoveryService
from src.services.events import SyncEventEmitter
from src.services.mapping_store import EntityMappingStore
from src.utils.clock import Clock, parse_iso, to_iso, utc_now
from src.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

PULL_ORDER = (EntityType.customer, EntityType.product, EntityType.order)
PUSH_ORDER = (EntityType.product, EntityType.customer)
INVENTORY = "inventory"
DEFAULT_SCOPE = "default"

# Fields validation recovery may fill when a push is rejected
PUSH_REQUIRED_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.customer: ("email",),
    EntityType.product: ("name",),
}


class SyncOptions(BaseModel):
    """Options for one sync session."""

    direction: SyncDirection = SyncDirection.both
    entity_types: list[EntityType] = Field(default_factory=lambda: list(PULL_ORDER))
    force: bool = False
    batch_size: int = Field(default=100, ge=1, le=100)
    scope: str = DEFAULT_SCOPE


class EntityResult(BaseModel):
    """Per-entity counters accumulated during a session."""

    pulled: int = 0
    pushed: int = 0
    unchanged: int = 0
    conflicts: int = 0
    errors: list[str] = Field(default_factory=list)


class SyncResults(BaseModel):
    """Aggregated results keyed by entity type (plus ``inventory``)."""

    entities: dict[str, EntityResult] = Field(default_factory=dict)

    def entity(self, name: EntityType | str) -> EntityResult:
        key = name.value if isinstance(name, EntityType) else name
        return self.entities.setdefault(key, EntityResult())

    def totals(self) -> dict[str, int]:
        return {
            "pulled": sum(r.pulled for r in self.entities.values()),
            "pushed": sum(r.pushed for r in self.entities.values()),
            "unchanged": sum(r.unchanged for r in self.entities.values()),
            "conflicts": sum(r.conflicts for r in self.entities.values()),
            "errors": sum(len(r.errors) for r in self.entities.values()),
        }


class SyncSessionResult(BaseModel):
    """Persisted view of a sync session."""

    sync_id: str
    sync_type: str
    scope: str
    status: SyncSessionStatus
    started_at: str
    completed_at: str | None = None
    options: SyncOptions
    results: SyncResults
    error_details: str | None = None


@dataclass
class ReconcileOutcome:
    """Result of reconciling one remote record.

    Attributes:
        action: created, updated, unchanged or skipped (manual conflict).
        local_id: Local record id, when one exists.
        conflicts: Conflicts recorded for the record.
        requires_manual: True if the write was skipped for review.
    """

    action: str
    local_id: str | None = None
    conflicts: int = 0
    requires_manual: bool = False


class _SessionCancelled(Exception):
    """Raised inside a run when the session was terminated externally."""

    pass


def generate_sync_id(now: Any) -> str:
    """Return a session id of the form sync_{epoch_ms}_{random}."""
    return f"sync_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


class SyncEngine:
    """Runs sync sessions and reconciles individual records.

    Attributes:
        client: Remote platform client.
        mappings: Entity mapping store.
        resolver: Conflict resolver.
        recovery: Error recovery service gating remote call retries.
        emitter: Event channel.
        stats: total_syncs, successful_syncs, failed_syncs, average_duration_ms.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: RemotePlatformClient,
        mappings: EntityMappingStore | None = None,
        resolver: ConflictResolver | None = None,
        recovery: ErrorRecoveryService | None = None,
        emitter: SyncEventEmitter | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.client = client
        self.emitter = emitter or SyncEventEmitter()
        self.mappings = mappings or EntityMappingStore(clock=clock)
        self.resolver = resolver or ConflictResolver(emitter=self.emitter, clock=clock)
        self.recovery = recovery
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self.stats: dict[str, float] = {
            "total_syncs": 0,
            "successful_syncs": 0,
            "failed_syncs": 0,
            "average_duration_ms": 0.0,
        }

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def _lock_for(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[scope] = lock
        return lock

    async def _acquire(self, options: SyncOptions) -> tuple[str, asyncio.Lock]:
        lock = self._lock_for(options.scope)
        if lock.locked():
            raise SyncInProgressError(options.scope)
        await lock.acquire()
        try:
            sync_id = await self._create_session(options)
        except BaseException:
            lock.release()
            raise
        return sync_id, lock

    async def _create_session(self, options: SyncOptions) -> str:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SyncSession.sync_id).where(
                    SyncSession.scope == options.scope,
                    SyncSession.status == SyncSessionStatus.running.value,
                ).limit(1)
            )
            running = result.scalar_one_or_none()
            if running is not None:
                raise SyncInProgressError(options.scope, running)

            now = self._clock()
            sync_id = generate_sync_id(now)
            session.add(SyncSession(
                sync_id=sync_id,
                sync_type="full_sync",
                scope=options.scope,
                status=SyncSessionStatus.running.value,
                started_at=to_iso(now),
                options_json=options.model_dump_json(),
            ))
            await session.commit()
        logger.info("Created sync session %s (scope=%s)", sync_id, options.scope)
        return sync_id

    async def start_full_sync(self, options: SyncOptions | None = None) -> str:
        """Start a full sync in the background.

        Returns:
            The new session id.

        Raises:
            SyncInProgressError: If a session is already running in the scope.
        """
        options = options or SyncOptions()
        sync_id, lock = await self._acquire(options)

        async def _run() -> None:
            try:
                await self._execute(sync_id, options)
            finally:
                lock.release()
                self._tasks.pop(sync_id, None)

        self._tasks[sync_id] = asyncio.create_task(_run())
        return sync_id

    async def run_full_sync(self, options: SyncOptions | None = None) -> SyncSessionResult:
        """Run a full sync inline and return the finished session.

        Raises:
            SyncInProgressError: If a session is already running in the scope.
        """
        options = options or SyncOptions()
        sync_id, lock = await self._acquire(options)
        try:
            await self._execute(sync_id, options)
        finally:
            lock.release()
        return await self.get_session_result(sync_id)

    async def wait_for_session(self, sync_id: str) -> SyncSessionResult:
        """Wait for a background session to finish."""
        task = self._tasks.get(sync_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.get_session_result(sync_id)

    async def cancel_sync(self, sync_id: str) -> bool:
        """Mark a running session failed; its phases stop at the next page.

        Returns:
            True if the session was running and is now failed.
        """
        cancelled = await self._finish(
            sync_id, SyncSessionStatus.failed, results=None, error="Cancelled by operator"
        )
        if cancelled:
            logger.warning("Sync session %s cancelled", sync_id)
            await self.emitter.emit_sync_failed(sync_id, "Cancelled by operator")
        return cancelled

    async def recover_interrupted_sessions(self) -> int:
        """Fail sessions left running by a previous process.

        Returns:
            Number of sessions marked failed.
        """
        async with self._session_factory() as session:
            stmt = update(SyncSession).where(
                SyncSession.status == SyncSessionStatus.running.value
            )
            if self._tasks:
                stmt = stmt.where(SyncSession.sync_id.not_in(list(self._tasks)))
            result = await session.execute(
                stmt.values(
                    status=SyncSessionStatus.failed.value,
                    completed_at=to_iso(self._clock()),
                    error_details="Interrupted by process restart",
                )
            )
            await session.commit()
        if result.rowcount:
            logger.warning("Marked %d interrupted sync session(s) failed", result.rowcount)
        return result.rowcount

    async def get_session_result(self, sync_id: str) -> SyncSessionResult:
        """Load a session and its results.

        Raises:
            NotFoundError: If the session does not exist.
        """
        async with self._session_factory() as session:
            record = await session.get(SyncSession, sync_id)
            if record is None:
                raise NotFoundError("SyncSession", sync_id)
            return SyncSessionResult(
                sync_id=record.sync_id,
                sync_type=record.sync_type,
                scope=record.scope,
                status=SyncSessionStatus(record.status),
                started_at=record.started_at,
                completed_at=record.completed_at,
                options=(
                    SyncOptions.model_validate_json(record.options_json)
                    if record.options_json else SyncOptions()
                ),
                results=(
                    SyncResults.model_validate_json(record.results_json)
                    if record.results_json else SyncResults()
                ),
                error_details=record.error_details,
            )

    async def _finish(
        self,
        sync_id: str,
        status: SyncSessionStatus,
        results: SyncResults | None,
        error: str | None = None,
    ) -> bool:
        """Write the terminal status once; later writers lose."""
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": to_iso(self._clock()),
            "error_details": error,
        }
        if results is not None:
            values["results_json"] = results.model_dump_json()
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncSession)
                .where(
                    SyncSession.sync_id == sync_id,
                    SyncSession.status == SyncSessionStatus.running.value,
                )
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def _store_results(self, sync_id: str, results: SyncResults) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncSession)
                .where(SyncSession.sync_id == sync_id)
                .values(results_json=results.model_dump_json())
            )
            await session.commit()

    async def _ensure_running(self, sync_id: str) -> None:
        async with self._session_factory() as session:
            status = await session.scalar(
                select(SyncSession.status).where(SyncSession.sync_id == sync_id)
            )
        if status != SyncSessionStatus.running.value:
            raise _SessionCancelled(sync_id)

    def _record_duration(self, success: bool, duration_ms: float) -> None:
        self.stats["total_syncs"] += 1
        if success:
            self.stats["successful_syncs"] += 1
        else:
            self.stats["failed_syncs"] += 1
        total = self.stats["total_syncs"]
        average = self.stats["average_duration_ms"]
        self.stats["average_duration_ms"] = average + (duration_ms - average) / total

    async def _execute(self, sync_id: str, options: SyncOptions) -> None:
        started = time.monotonic()
        results = SyncResults()
        await self.emitter.emit_sync_started(sync_id, options.model_dump(mode="json"))
        logger.info(
            "Sync %s started (direction=%s, entities=%s, force=%s)",
            sync_id, options.direction.value,
            [e.value for e in options.entity_types], options.force,
        )
        try:
            if options.direction in (SyncDirection.pull, SyncDirection.both):
                for entity in PULL_ORDER:
                    if entity in options.entity_types:
                        await self._pull_entity(sync_id, entity, options, results.entity(entity))

            if options.direction in (SyncDirection.push, SyncDirection.both):
                if EntityType.product in options.entity_types:
                    await self._push_entity(
                        sync_id, EntityType.product, options,
                        results.entity(INVENTORY), inventory=True,
                    )
                for entity in PUSH_ORDER:
                    if entity in options.entity_types:
                        await self._push_entity(sync_id, entity, options, results.entity(entity))

        except _SessionCancelled:
            await self._store_results(sync_id, results)
            self._record_duration(False, (time.monotonic() - started) * 1000)
            logger.info("Sync %s stopped after cancellation", sync_id)
            return

        except Exception as e:
            duration_ms = (time.monotonic() - started) * 1000
            error = sanitize_error_message(f"{type(e).__name__}: {e}") or type(e).__name__
            await self._finish(sync_id, SyncSessionStatus.failed, results, error=error)
            self._record_duration(False, duration_ms)
            logger.error("Sync %s failed: %s", sync_id, error)
            await self.emitter.emit_sync_failed(sync_id, error)
            return

        duration_ms = (time.monotonic() - started) * 1000
        if await self._finish(sync_id, SyncSessionStatus.completed, results):
            self._record_duration(True, duration_ms)
            totals = results.totals()
            logger.info("Sync %s completed in %.0fms: %s", sync_id, duration_ms, totals)
            await self.emitter.emit_sync_completed(
                sync_id, results.model_dump(mode="json"), duration_ms
            )
        else:
            await self._store_results(sync_id, results)
            self._record_duration(False, duration_ms)

    # =========================================================================
    # Remote calls
    # =========================================================================

    async def _call_remote(
        self,
        operation_type: str,
        call: Callable[[], Awaitable[Any]],
        operation_id: str | None = None,
        context: dict[str, Any] | None = None,
        retry: Callable[[dict[str, Any] | None], Awaitable[Any]] | None = None,
    ) -> Any:
        """Invoke the remote, routing failures through error recovery.

        Args:
            operation_type: Operation class for the breaker key.
            call: The remote call.
            operation_id: Identifier of the unit, for the error log.
            context: Recovery context (``payload`` and ``required_fields``
                enable validation coercion).
            retry: Retry taking the coerced payload. Defaults to re-running
                ``call`` unchanged.

        Raises:
            SyncAbortedError: On authentication failures.
            CircuitOpenError: When the breaker short-circuits recovery.
            Exception: The last error when recovery did not succeed.
        """
        try:
            return await call()
        except Exception as e:
            if self.recovery is None:
                raise
            outcome = await self.recovery.handle_error(
                e,
                operation_type,
                operation_id,
                retry=retry or (lambda _payload: call()),
                context=context,
            )
            if outcome.recovered:
                return outcome.result
            if outcome.short_circuited:
                breaker = self.recovery.breakers.get(operation_type, outcome.category.value)
                raise CircuitOpenError(breaker.key, breaker.snapshot().next_attempt) from e
            if outcome.category == ErrorCategory.auth:
                raise SyncAbortedError(str(e), ErrorCategory.auth.value) from e
            raise (outcome.error or e) from None

    # =========================================================================
    # Pull
    # =========================================================================

    async def _pull_entity(
        self,
        sync_id: str,
        entity: EntityType,
        options: SyncOptions,
        result: EntityResult,
    ) -> None:
        page = 1
        processed = 0
        while True:
            await self._ensure_running(sync_id)
            try:
                records = await self._call_remote(
                    f"{entity.value}_pull",
                    functools.partial(
                        self.client.list_records, entity, page, options.batch_size
                    ),
                    operation_id=sync_id,
                )
            except (SyncAbortedError, CircuitOpenError):
                raise
            except Exception as e:
                result.errors.append(f"page {page}: {sanitize_error_message(str(e))}")
                logger.warning("Pull of %s page %d failed: %s", entity.value, page, e)
                return

            for record in records:
                try:
                    outcome = await self.reconcile_record(
                        entity, record, sync_id=sync_id, force=options.force
                    )
                except Exception as e:
                    result.errors.append(
                        f"{entity.value} {record.get('id')}: {sanitize_error_message(str(e))}"
                    )
                    logger.warning(
                        "Failed to reconcile %s %s: %s", entity.value, record.get("id"), e
                    )
                    continue
                result.conflicts += outcome.conflicts
                if outcome.action in ("created", "updated"):
                    result.pulled += 1
                elif outcome.action == "unchanged":
                    result.unchanged += 1

            processed += len(records)
            await self.emitter.emit_pull_progress(sync_id, entity.value, page, processed)
            if len(records) < options.batch_size:
                return
            page += 1

    def _locally_diverged(
        self, local: Any, mapping: EntityMapping | None, remote: dict[str, Any]
    ) -> bool:
        """True if the local record changed since it was last synchronized."""
        local_updated = parse_iso(local.updated_at)
        if local_updated is None:
            return False
        if mapping is not None and mapping.last_sync_at:
            last_sync = parse_iso(mapping.last_sync_at)
            return last_sync is not None and local_updated > last_sync
        remote_updated = parse_iso(remote_modified_at(remote))
        return remote_updated is not None and local_updated > remote_updated

    async def _find_local(
        self,
        session: AsyncSession,
        entity: EntityType,
        remote: dict[str, Any],
        mapping: EntityMapping | None,
    ) -> Any:
        model = LOCAL_MODELS[entity]
        if mapping is not None:
            local = await session.get(model, mapping.local_id)
            if local is not None:
                return local
        column, value = natural_key(entity, remote)
        result = await session.execute(select(model).where(getattr(model, column) == value))
        return result.scalar_one_or_none()

    async def _order_customer_id(self, session: AsyncSession, remote: dict[str, Any]) -> str | None:
        remote_customer = remote.get("customer_id")
        if not remote_customer:
            return None
        mapping = await self.mappings.get_by_remote(session, EntityType.customer, remote_customer)
        return mapping.local_id if mapping is not None else None

    async def reconcile_record(
        self,
        entity_type: EntityType | str,
        remote: dict[str, Any],
        sync_id: str | None = None,
        force: bool = False,
        allow_conflicts: bool = True,
    ) -> ReconcileOutcome:
        """Bring the local twin of one remote record up to date.

        The local write runs under error recovery as ``{entity}_db``, so a
        transient database failure is retried and a constraint violation
        is terminal.

        Args:
            entity_type: Entity type of the record.
            remote: Raw remote record.
            sync_id: Owning sync session, recorded on conflicts.
            force: Overwrite local changes without conflict detection.
            allow_conflicts: When False the remote is authoritative and no
                conflict detection runs (webhook path).

        Returns:
            ReconcileOutcome describing the write.

        Raises:
            ValueError: If the record lacks an id or natural key.
        """
        entity = EntityType(entity_type)
        if remote.get("id") is None:
            raise ValueError(f"Remote {entity.value} record has no id")
        remote_id = str(remote["id"])
        mapped = remote_to_local(entity, remote)

        async def write(_payload: dict[str, Any] | None = None) -> ReconcileOutcome:
            return await self._write_local(
                entity, remote, remote_id, dict(mapped), sync_id, force, allow_conflicts
            )

        if self.recovery is None:
            return await write()
        return await self.recovery.execute(f"{entity.value}_db", write, operation_id=remote_id)

    async def _write_local(
        self,
        entity: EntityType,
        remote: dict[str, Any],
        remote_id: str,
        values: dict[str, Any],
        sync_id: str | None,
        force: bool,
        allow_conflicts: bool,
    ) -> ReconcileOutcome:
        model = LOCAL_MODELS[entity]
        async with self._session_factory() as session:
            if entity == EntityType.order:
                values["customer_id"] = await self._order_customer_id(session, remote)
            mapping = await self.mappings.get_by_remote(session, entity, remote_id)
            local = await self._find_local(session, entity, remote, mapping)
            conflicts = 0
            keeps_local = False

            if (
                local is not None
                and not force
                and allow_conflicts
                and self._locally_diverged(local, mapping, remote)
            ):
                outcome = await self.resolver.process(
                    session, entity, local_snapshot(entity, local), remote,
                    sync_id=sync_id, entity_id=local.id,
                )
                conflicts = len(outcome.conflicts)
                if outcome.requires_manual:
                    await session.commit()
                    logger.info(
                        "Skipped %s %s pending manual conflict review", entity.value, local.id
                    )
                    return ReconcileOutcome(
                        action="skipped", local_id=local.id,
                        conflicts=conflicts, requires_manual=True,
                    )
                apply_resolved_values(values, outcome.resolved_values)
                # Local values that won must reach the remote before the
                # record counts as synced again
                keeps_local = any(
                    not values_equal(resolution.value, conflict.remote_value)
                    for conflict, resolution in zip(outcome.conflicts, outcome.resolutions)
                )

            modified_at = remote_modified_at(remote)
            if local is not None and not has_changes(local, values):
                await self.mappings.upsert(
                    session, entity, local.id, remote_id,
                    remote_modified_at=modified_at, mark_synced=not keeps_local,
                )
                await session.commit()
                return ReconcileOutcome(action="unchanged", local_id=local.id, conflicts=conflicts)

            now = to_iso(self._clock())
            values["updated_at"] = now
            if local is not None:
                await session.execute(
                    update(model).where(model.id == local.id).values(**values)
                )
                local_id = local.id
                action = "updated"
            else:
                local_id = await upsert(
                    session,
                    model.__table__,
                    {"id": generate_uuid(), "created_at": now, **values},
                    conflict_columns=[NATURAL_KEY_COLUMNS[entity]],
                )
                action = "created"

            await self.mappings.upsert(
                session, entity, local_id, remote_id,
                remote_modified_at=modified_at, mark_synced=not keeps_local,
            )
            await session.commit()

        if keeps_local:
            logger.debug("%s %s keeps local values pending push", entity.value, local_id)
        logger.debug("%s %s %s (remote %s)", action.capitalize(), entity.value, local_id, remote_id)
        return ReconcileOutcome(action=action, local_id=local_id, conflicts=conflicts)

    async def sync_remote_record(
        self, entity_type: EntityType | str, remote_id: str | int
    ) -> ReconcileOutcome:
        """Fetch one remote record and reconcile it.

        A record the remote no longer has is treated as a remote deletion.
        """
        entity = EntityType(entity_type)
        remote = await self._call_remote(
            f"{entity.value}_pull",
            functools.partial(self.client.get_record, entity, str(remote_id)),
            operation_id=str(remote_id),
        )
        if remote is None:
            await self.deactivate_remote_deletion(entity, remote_id)
            return ReconcileOutcome(action="deactivated")
        return await self.reconcile_record(entity, remote)

    async def deactivate_remote_deletion(
        self, entity_type: EntityType | str, remote_id: str | int
    ) -> bool:
        """Deactivate the local twin of a record deleted remotely.

        Returns:
            True if a mapped local record was deactivated.
        """
        entity = EntityType(entity_type)
        model = LOCAL_MODELS[entity]
        async with self._session_factory() as session:
            mapping = await self.mappings.get_by_remote(session, entity, remote_id)
            if mapping is None:
                logger.info("No active mapping for deleted %s %s", entity.value, remote_id)
                return False
            await session.execute(
                update(model)
                .where(model.id == mapping.local_id)
                .values(
                    is_active=False,
                    deleted_from_remote=True,
                    updated_at=to_iso(self._clock()),
                )
            )
            await self.mappings.deactivate(session, entity, remote_id=remote_id)
            await session.commit()
        logger.info("Deactivated %s %s deleted remotely", entity.value, mapping.local_id)
        return True

    async def apply_manual_resolution(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        field_name: str,
        value: Any,
    ) -> None:
        """Write a manually resolved value to the local record.

        Raises:
            NotFoundError: If the local record does not exist.
        """
        entity = EntityType(entity_type)
        model = LOCAL_MODELS[entity]
        column, column_val = column_value(field_name, value)
        async with self._session_factory() as session:
            result = await session.execute(
                update(model)
                .where(model.id == entity_id)
                .values({column: column_val, "updated_at": to_iso(self._clock())})
            )
            if result.rowcount == 0:
                raise NotFoundError(model.__name__, entity_id)
            await session.commit()
        logger.info("Applied manual resolution to %s %s.%s", entity.value, entity_id, field_name)

    # =========================================================================
    # Push
    # =========================================================================

    async def _push_entity(
        self,
        sync_id: str,
        entity: EntityType,
        options: SyncOptions,
        result: EntityResult,
        inventory: bool = False,
    ) -> None:
        model = LOCAL_MODELS[entity]
        operation_type = "inventory_push" if inventory else f"{entity.value}_push"
        offset = 0
        while True:
            await self._ensure_running(sync_id)
            async with self._session_factory() as session:
                mappings = await self.mappings.list_pushable(
                    session, entity, options.batch_size, offset
                )
                local_ids = [m.local_id for m in mappings]
                rows = await session.execute(select(model).where(model.id.in_(local_ids)))
                records = {r.id: r for r in rows.scalars().all()}

            for mapping in mappings:
                record = records.get(mapping.local_id)
                if record is None or not record.is_active:
                    continue
                if inventory and record.stock_quantity is None:
                    continue
                try:
                    await self._push_one(operation_type, entity, mapping, record, inventory)
                except SyncAbortedError:
                    raise
                except Exception as e:
                    result.errors.append(
                        f"{entity.value} {mapping.local_id}: {sanitize_error_message(str(e))}"
                    )
                    logger.warning(
                        "Push of %s %s failed: %s", entity.value, mapping.local_id, e
                    )
                    continue
                result.pushed += 1

            if len(mappings) < options.batch_size:
                return
            offset += options.batch_size

    async def _push_one(
        self,
        operation_type: str,
        entity: EntityType,
        mapping: EntityMapping,
        record: Any,
        inventory: bool,
    ) -> dict[str, Any]:
        payload = inventory_payload(record) if inventory else local_to_remote(entity, record)
        required = () if inventory else PUSH_REQUIRED_FIELDS.get(entity, ())

        async def update_remote(coerced: dict[str, Any] | None = None) -> dict[str, Any]:
            return await self.client.update_record(
                entity, mapping.remote_id, coerced or payload
            )

        response = await self._call_remote(
            operation_type,
            update_remote,
            operation_id=mapping.remote_id,
            context={"payload": payload, "required_fields": list(required)},
            retry=update_remote,
        )
        async with self._session_factory() as session:
            await self.mappings.touch(session, mapping.id)
            await session.commit()
        return response

    async def push_local_record(
        self,
        entity_type: EntityType | str,
        local_id: str,
        inventory: bool = False,
    ) -> dict[str, Any]:
        """Push one mapped local record (or its stock) to the remote.

        Raises:
            NotFoundError: If the record or its active mapping is missing.
        """
        entity = EntityType(entity_type)
        if inventory and entity != EntityType.product:
            raise ValueError("Inventory pushes apply to products only")
        model = LOCAL_MODELS[entity]
        async with self._session_factory() as session:
            mapping = await self.mappings.get_by_local(session, entity, local_id)
            record = await session.get(model, local_id)
        if mapping is None or record is None:
            raise NotFoundError(f"Mapped {entity.value}", local_id)
        operation_type = "inventory_push" if inventory else f"{entity.value}_push"
        return await self._push_one(operation_type, entity, mapping, record, inventory)

    async def get_stats(self) -> dict[str, Any]:
        """Session counters plus mapping counts."""
        async with self._session_factory() as session:
            mapped = {
                entity.value: await self.mappings.count(session, entity)
                for entity in PULL_ORDER
            }
        return {**self.stats, "mappings": mapped, "running": list(self._tasks)}

