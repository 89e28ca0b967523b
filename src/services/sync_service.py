"""StoreSyncService: the wired service graph and its public operations.

Builds one event emitter, breaker registry, recovery service, remote
client, sync engine, webhook queue, batch scheduler and monitor from a
StoreSyncConfig, and exposes the operations an outer layer (CLI, web
routes) calls.

Example:
    service = StoreSyncService.from_config(load_config())
    await service.init_db()
    sync_id = await service.start_full_sync({"direction": "pull"})
"""

import logging
import os
from dataclasses import asdict
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.cli.config import StoreSyncConfig
from src.clients.base import RemotePlatformClient
from src.clients.woocommerce import WooCommerceClient
from src.db.connection import (
    create_engine_for_url,
    create_session_factory,
    get_database_url,
    init_schema,
    to_async_url,
)
from src.db.models import ConflictStatus, EntityType, ItemType, JobType, SyncConflict
from src.errors.domain import InvalidStateTransition, NotFoundError
from src.services.batch_scheduler import BatchScheduler, JobOptions
from src.services.circuit_breaker import CircuitBreakerRegistry
from src.services.conflict_resolver import ConflictResolver
from src.services.error_recovery import ErrorRecoveryService, SleepCallable
from src.services.events import SyncEventEmitter
from src.services.mapping_store import EntityMappingStore
from src.services.monitoring import MonitoringService
from src.services.retention import RetentionService
from src.services.sync_engine import SyncEngine, SyncOptions, SyncSessionResult
from src.services.webhook_queue import WebhookQueue
from src.utils.clock import Clock, utc_now
from src.utils.paths import ensure_dirs_exist

logger = logging.getLogger(__name__)

_SYNC_ITEM_ENTITIES: dict[ItemType, EntityType] = {
    ItemType.customer_sync: EntityType.customer,
    ItemType.product_sync: EntityType.product,
    ItemType.order_sync: EntityType.order,
}


class StoreSyncService:
    """Facade over the sync service graph.

    Attributes:
        config: Loaded configuration.
        emitter: Shared event channel.
        engine: Sync engine.
        webhooks: Webhook ingestion queue.
        scheduler: Batch job scheduler.
        monitor: Monitoring service (registered as an observer).
        recovery: Error recovery service.
    """

    def __init__(
        self,
        config: StoreSyncConfig,
        session_factory: async_sessionmaker[AsyncSession],
        client: RemotePlatformClient | None = None,
        clock: Clock = utc_now,
        sleep: SleepCallable | None = None,
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self.config = config
        self._session_factory = session_factory
        self._db_engine = db_engine
        self.emitter = SyncEventEmitter()

        self.monitor = MonitoringService(session_factory, config.monitoring, self.emitter, clock)
        self.emitter.add_observer(self.monitor)

        self.breakers = CircuitBreakerRegistry(
            failure_threshold=config.recovery.breaker_threshold,
            reset_timeout=config.recovery.breaker_timeout,
            clock=clock,
        )
        self.recovery = ErrorRecoveryService(
            session_factory, self.breakers, config.recovery, self.emitter, clock, sleep
        )

        if client is None:
            remote = config.remote
            client_kwargs: dict[str, Any] = {}
            if sleep is not None:
                client_kwargs["sleep"] = sleep
            client = WooCommerceClient(
                site_url=remote.site_url,
                consumer_key=remote.consumer_key,
                consumer_secret=remote.consumer_secret,
                timeout=remote.timeout_seconds,
                max_retries=remote.max_retries,
                base_delay=remote.retry_base_delay,
                on_response=self.monitor.record_api_call,
                **client_kwargs,
            )
        self.client = client

        self.mappings = EntityMappingStore(clock=clock)
        self.resolver = ConflictResolver(emitter=self.emitter, clock=clock)
        self.engine = SyncEngine(
            session_factory,
            client,
            mappings=self.mappings,
            resolver=self.resolver,
            recovery=self.recovery,
            emitter=self.emitter,
            clock=clock,
        )
        self.webhooks = WebhookQueue(
            session_factory, self.engine, config.webhook, self.emitter, clock
        )
        self.retention = RetentionService(session_factory, config.batch.retention_days, clock)
        self.scheduler = BatchScheduler(session_factory, config.batch, self.emitter, clock)
        self._register_item_handlers()

    @classmethod
    def from_config(
        cls, config: StoreSyncConfig, client: RemotePlatformClient | None = None
    ) -> "StoreSyncService":
        """Build a service with its own database engine.

        DATABASE_URL wins over ``database.url``; with neither set the
        default file under the user data directory is used.
        """
        url = os.environ.get("DATABASE_URL", "").strip() or config.database.url
        if not url:
            ensure_dirs_exist()
            url = get_database_url()
        url = to_async_url(url)
        db_engine = create_engine_for_url(url, echo=config.database.echo)
        return cls(
            config,
            create_session_factory(db_engine),
            client=client,
            db_engine=db_engine,
        )

    def _register_item_handlers(self) -> None:
        for item_type, entity in _SYNC_ITEM_ENTITIES.items():
            self.scheduler.register_handler(item_type, self._entity_sync_handler(entity))
        self.scheduler.register_handler(ItemType.inventory_push, self._handle_inventory_push)
        self.scheduler.register_handler(ItemType.webhook_event, self._handle_webhook_event)
        self.scheduler.register_handler(ItemType.cleanup, self._handle_cleanup)

    def _entity_sync_handler(self, entity: EntityType):
        async def handler(payload: dict[str, Any]) -> dict[str, Any]:
            outcome = await self.engine.sync_remote_record(entity, payload["remote_id"])
            return asdict(outcome)

        return handler

    async def _handle_inventory_push(self, payload: dict[str, Any]) -> dict[str, Any]:
        await self.engine.push_local_record(EntityType.product, payload["local_id"], inventory=True)
        return {"local_id": payload["local_id"]}

    async def _handle_webhook_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        await self.webhooks.replay_event(payload["event_id"])
        return {"event_id": payload["event_id"]}

    async def _handle_cleanup(self, payload: dict[str, Any]) -> dict[str, Any]:
        counts = await self.retention.cleanup(payload.get("retention_days"))
        jobs = await self.scheduler.cleanup_old_jobs()
        return {**counts, "batch_jobs": jobs["jobs"]}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init_db(self) -> None:
        """Create all tables on the service's database."""
        if self._db_engine is None:
            raise RuntimeError("init_db requires a service built with from_config()")
        await init_schema(self._db_engine)

    async def start(self) -> None:
        """Recover interrupted work and start the background loops."""
        await self.engine.recover_interrupted_sessions()
        await self.scheduler.recover_interrupted_jobs()
        self.webhooks.start()
        self.scheduler.start()
        self.monitor.start()
        logger.info("StoreSync background loops started")

    async def stop(self) -> None:
        """Stop the background loops."""
        await self.webhooks.stop()
        await self.scheduler.stop()
        await self.monitor.stop()
        logger.info("StoreSync background loops stopped")

    async def close(self) -> None:
        """Stop loops, close the remote client and dispose an owned engine."""
        await self.stop()
        await self.client.close()
        if self._db_engine is not None:
            await self._db_engine.dispose()

    # =========================================================================
    # Operations
    # =========================================================================

    async def start_full_sync(self, options: SyncOptions | dict[str, Any] | None = None) -> str:
        if isinstance(options, dict):
            options = SyncOptions.model_validate(options)
        return await self.engine.start_full_sync(options)

    async def run_full_sync(
        self, options: SyncOptions | dict[str, Any] | None = None
    ) -> SyncSessionResult:
        if isinstance(options, dict):
            options = SyncOptions.model_validate(options)
        return await self.engine.run_full_sync(options)

    async def process_webhook_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        signature: str | None = None,
        source_ip: str | None = None,
        raw_body: bytes | None = None,
    ) -> dict[str, str]:
        return await self.webhooks.process_webhook_event(
            event_type, payload, signature=signature, source_ip=source_ip, raw_body=raw_body
        )

    async def queue_batch_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> str:
        return await self.scheduler.queue_batch_job(job_type, payload, options)

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        return await self.scheduler.get_job_status(job_id)

    async def get_sync_session_result(self, sync_id: str) -> SyncSessionResult:
        return await self.engine.get_session_result(sync_id)

    async def get_pending_conflicts(self, limit: int = 50) -> list[SyncConflict]:
        async with self._session_factory() as session:
            return await self.resolver.get_pending_conflicts(session, limit)

    async def resolve_conflict_manually(
        self, conflict_id: str, value: Any, resolved_by: str = "manual"
    ) -> SyncConflict:
        """Apply a human decision to the local record and close the conflict.

        Raises:
            NotFoundError: If the conflict or its local record is missing.
            InvalidStateTransition: If the conflict is not pending.
        """
        async with self._session_factory() as session:
            conflict = await session.get(SyncConflict, conflict_id)
            if conflict is None:
                raise NotFoundError("Conflict", conflict_id)
            if conflict.status != ConflictStatus.pending.value:
                raise InvalidStateTransition("Conflict", conflict.status, ConflictStatus.resolved)
            entity_type, entity_id, field_name = (
                conflict.entity_type, conflict.entity_id, conflict.field_name
            )

        await self.engine.apply_manual_resolution(entity_type, entity_id, field_name, value)

        async with self._session_factory() as session:
            resolved = await self.resolver.resolve_manually(
                session, conflict_id, value, resolved_by=resolved_by
            )
            await session.commit()
        logger.info("Conflict %s resolved manually by %s", conflict_id, resolved_by)
        return resolved

    async def get_dashboard(self) -> dict[str, Any]:
        data = await self.monitor.get_dashboard_data()
        data["sync_engine"] = await self.engine.get_stats()
        return data

    async def get_recovery_stats(self) -> dict[str, Any]:
        return await self.recovery.get_recovery_stats()
