"""Database module for StoreSync state management and persistence."""

from src.db.connection import (
    AsyncSessionLocal,
    async_engine,
    async_init_db,
    close_async_db,
    create_engine_for_url,
    create_session_factory,
    get_async_db_context,
    init_schema,
)
from src.db.models import (
    BatchItem,
    BatchJob,
    BatchProgress,
    CircuitBreakerRecord,
    ConflictBackup,
    ConflictRule,
    Customer,
    EntityMapping,
    EntityType,
    ErrorRecord,
    JobStatus,
    MonitoringAlert,
    Order,
    PerformanceLog,
    Product,
    SyncConflict,
    SyncSession,
    WebhookEvent,
)

__all__ = [
    # Models
    "Customer",
    "Product",
    "Order",
    "EntityMapping",
    "SyncSession",
    "SyncConflict",
    "ConflictRule",
    "ConflictBackup",
    "ErrorRecord",
    "CircuitBreakerRecord",
    "BatchJob",
    "BatchItem",
    "BatchProgress",
    "WebhookEvent",
    "PerformanceLog",
    "MonitoringAlert",
    # Enums
    "EntityType",
    "JobStatus",
    # Connection
    "async_engine",
    "AsyncSessionLocal",
    "create_engine_for_url",
    "create_session_factory",
    "get_async_db_context",
    "init_schema",
    "async_init_db",
    "close_async_db",
]
