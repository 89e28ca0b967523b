"""Service layer for StoreSync.

Provides entity mapping, conflict resolution, error recovery, the sync
engine, webhook ingestion, batch scheduling and monitoring, wired
together by StoreSyncService.
"""

from src.services.batch_scheduler import BatchScheduler, JobOptions
from src.services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from src.services.conflict_resolver import ConflictResolver
from src.services.error_recovery import ErrorRecoveryService, RecoveryOutcome
from src.services.events import SyncEventEmitter, SyncEventObserver
from src.services.mapping_store import EntityMappingStore
from src.services.monitoring import MonitoringService
from src.services.retention import RetentionService
from src.services.sync_engine import SyncEngine, SyncOptions, SyncSessionResult
from src.services.sync_service import StoreSyncService
from src.services.webhook_queue import WebhookQueue

__all__ = [
    "BatchScheduler",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "ConflictResolver",
    "EntityMappingStore",
    "ErrorRecoveryService",
    "JobOptions",
    "MonitoringService",
    "RecoveryOutcome",
    "RetentionService",
    "StoreSyncService",
    "SyncEngine",
    "SyncEventEmitter",
    "SyncEventObserver",
    "SyncOptions",
    "SyncSessionResult",
    "WebhookQueue",
]
