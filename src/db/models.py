"""SQLAlchemy ORM models for the StoreSync state database.

This module defines the local system of record (customers, products,
orders) together with the bookkeeping tables the sync engine needs:
entity mappings, sync sessions, conflicts, recovery records, circuit
breaker state, batch jobs, webhook events and monitoring data. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class EntityType(str, Enum):
    """Entity types that are synchronized with the remote store."""

    customer = "customer"
    product = "product"
    order = "order"


class SyncDirection(str, Enum):
    """Direction a mapping (or a sync run) moves data in."""

    pull = "pull"
    push = "push"
    both = "both"


class SyncSessionStatus(str, Enum):
    """Status values for sync sessions.

    Lifecycle: running -> completed/failed (terminal, set exactly once)
    """

    running = "running"
    completed = "completed"
    failed = "failed"


class ConflictStatus(str, Enum):
    """Status values for recorded field conflicts."""

    pending = "pending"
    resolved = "resolved"
    failed = "failed"


class ResolutionStrategy(str, Enum):
    """Strategies available to the conflict resolver."""

    timestamp = "timestamp"
    priority = "priority"
    merge = "merge"
    manual = "manual"
    remote_wins = "remote_wins"
    local_wins = "local_wins"


class ConflictType(str, Enum):
    """Classification of a detected field divergence."""

    type_mismatch = "type_mismatch"
    object_difference = "object_difference"
    price_difference = "price_difference"
    timestamp_difference = "timestamp_difference"
    value_difference = "value_difference"


class RecoveryStatus(str, Enum):
    """Outcome of an error recovery record.

    pending means the error awaits manual action.
    """

    pending = "pending"
    recovered = "recovered"
    failed = "failed"


class BreakerState(str, Enum):
    """Circuit breaker states."""

    closed = "closed"
    open = "open"
    half_open = "half-open"


class JobStatus(str, Enum):
    """Status values for batch jobs.

    Lifecycle: pending -> running -> completed/failed
               scheduled -> pending (once due)
               failed -> pending (retry, while retry_count < max_retries)
    """

    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    scheduled = "scheduled"


class JobType(str, Enum):
    """Kinds of batch jobs."""

    sync = "sync"
    webhook = "webhook"
    cleanup = "cleanup"


class ItemStatus(str, Enum):
    """Status values for individual items within a batch job."""

    pending = "pending"
    completed = "completed"
    failed = "failed"


class ItemType(str, Enum):
    """Unit of work carried by a batch item."""

    customer_sync = "customer_sync"
    product_sync = "product_sync"
    order_sync = "order_sync"
    inventory_push = "inventory_push"
    webhook_event = "webhook_event"
    cleanup = "cleanup"


class WebhookStatus(str, Enum):
    """Status values for inbound webhook events."""

    pending = "pending"
    processed = "processed"
    failed = "failed"


class AlertSeverity(str, Enum):
    """Severity levels for monitoring alerts."""

    info = "info"
    warning = "warning"
    critical = "critical"


class AlertStatus(str, Enum):
    """Status values for monitoring alerts."""

    active = "active"
    resolved = "resolved"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Local system of record


class Customer(Base):
    """Local customer record.

    Attributes:
        id: UUID primary key
        customer_code: Stable external code (WC-{remote id} for pulled customers)
        email: Natural key used to match remote customers
        company_name: Company or display name
        first_name: Given name
        last_name: Family name
        phone: Billing phone number
        billing_address_json: JSON billing address object
        shipping_address_json: JSON shipping address object
        is_active: False once deactivated
        deleted_from_remote: True when the remote store deleted the record
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last local write
    """

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    customer_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    billing_address_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_address_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    deleted_from_remote: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("email", name="uq_customers_email"),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id!r}, email={self.email!r})>"


class Product(Base):
    """Local product record.

    Attributes:
        id: UUID primary key
        sku: Natural key used to match remote products
        name: Product name
        description: Long description
        unit_price: Selling price
        cost_price: Cost price
        stock_quantity: Units on hand (local inventory is authoritative)
        is_active: False once deactivated or unpublished remotely
        deleted_from_remote: True when the remote store deleted the record
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last local write
    """

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_price: Mapped[float | None] = mapped_column(Float, nullable=True)
    stock_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    deleted_from_remote: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("sku", name="uq_products_sku"),
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id!r}, sku={self.sku!r})>"


class Order(Base):
    """Local sales order record.

    Attributes:
        id: UUID primary key
        order_number: Natural key used to match remote orders
        customer_id: Local customer id when the remote customer is mapped
        status: Remote order status (processing, completed, ...)
        currency: ISO currency code
        total_amount: Grand total
        subtotal: Total before tax and shipping
        tax_amount: Total tax
        shipping_cost: Shipping total
        items_json: JSON list of line items
        shipping_address_json: JSON shipping address object
        order_date: ISO8601 creation date on the remote store
        is_active: False once deactivated
        deleted_from_remote: True when the remote store deleted the record
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last local write
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_number: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    total_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    subtotal: Mapped[float | None] = mapped_column(Float, nullable=True)
    tax_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    shipping_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    items_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_address_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    deleted_from_remote: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint("order_number", name="uq_orders_order_number"),
        Index("idx_orders_customer_id", "customer_id"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id!r}, order_number={self.order_number!r})>"


# Sync bookkeeping


class EntityMapping(Base):
    """Bidirectional id mapping between a local record and its remote twin.

    Attributes:
        id: UUID primary key
        entity_type: customer, product or order
        local_id: Local record id
        remote_id: Remote record id (stringified integer)
        sync_direction: pull, push or both
        active: False once either side was deleted
        last_sync_at: ISO8601 timestamp of the last successful sync
        remote_modified_at: Remote date_modified seen at last sync
        metadata_json: Provider-specific extras
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "entity_mappings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    local_id: Mapped[str] = mapped_column(String(36), nullable=False)
    remote_id: Mapped[str] = mapped_column(String(50), nullable=False)
    sync_direction: Mapped[str] = mapped_column(
        String(10), nullable=False, default=SyncDirection.both.value
    )
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    last_sync_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remote_modified_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "local_id", name="uq_entity_mappings_local"
        ),
        UniqueConstraint(
            "entity_type", "remote_id", name="uq_entity_mappings_remote"
        ),
        Index("idx_entity_mappings_direction", "entity_type", "sync_direction"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntityMapping(entity_type={self.entity_type!r}, "
            f"local_id={self.local_id!r}, remote_id={self.remote_id!r})>"
        )


class SyncSession(Base):
    """A single sync run and its aggregated results.

    Attributes:
        sync_id: Primary key (sync_{timestamp}_{random})
        sync_type: full_sync, pull or push
        scope: Mutual-exclusion scope name
        status: running, completed or failed
        started_at: ISO8601 start timestamp
        completed_at: ISO8601 timestamp of the terminal transition
        options_json: Serialized SyncOptions
        results_json: Serialized SyncResults
        error_details: Captured error text when the session failed
    """

    __tablename__ = "sync_sessions"

    sync_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    scope: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncSessionStatus.running.value
    )
    started_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    options_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    results_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_sync_sessions_status", "scope", "status"),
        Index("idx_sync_sessions_started_at", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncSession(sync_id={self.sync_id!r}, status={self.status!r})>"


class SyncConflict(Base):
    """A detected field-level divergence and how it was resolved.

    Values are stored as JSON text so objects, lists and scalars survive
    the round trip unchanged.
    """

    __tablename__ = "sync_conflicts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    sync_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(50), nullable=False)
    field_name: Mapped[str] = mapped_column(String(100), nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(30), nullable=False)
    local_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConflictStatus.pending.value
    )
    auto_resolved: Mapped[bool] = mapped_column(nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    local_timestamp: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remote_timestamp: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    backups: Mapped[list["ConflictBackup"]] = relationship(
        "ConflictBackup", back_populates="conflict", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_sync_conflicts_sync_id", "sync_id"),
        Index("idx_sync_conflicts_entity", "entity_type", "entity_id"),
        Index("idx_sync_conflicts_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncConflict(id={self.id!r}, field={self.field_name!r}, "
            f"status={self.status!r})>"
        )


class ConflictRule(Base):
    """Custom resolution rule consulted before the static priority table.

    A null field_name or conflict_type matches any value. Lower priority
    numbers win.
    """

    __tablename__ = "conflict_rules"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    field_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    conflict_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_conflict_rules_lookup", "entity_type", "active", "priority"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConflictRule(entity_type={self.entity_type!r}, "
            f"field={self.field_name!r}, strategy={self.strategy!r})>"
        )


class ConflictBackup(Base):
    """Snapshot of the local record taken when a conflict was recorded."""

    __tablename__ = "conflict_backups"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conflict_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sync_conflicts.id", ondelete="CASCADE"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(50), nullable=False)
    original_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conflict: Mapped["SyncConflict"] = relationship(
        "SyncConflict", back_populates="backups"
    )

    __table_args__ = (
        Index("idx_conflict_backups_conflict_id", "conflict_id"),
    )


class ErrorRecord(Base):
    """Durable log of one error and the recovery attempted for it.

    Attributes:
        id: UUID primary key
        category: Classification category (timeout, rate_limit, ...)
        error_code: Registry code in E-XXXX format
        operation_type: Operation class (e.g. customer_pull)
        operation_id: Identifier of the failing unit (sync id, record id)
        message: Redacted error text
        recovery_strategy: Strategy that was applied
        recovery_status: pending (awaiting manual action), recovered or failed
        attempts: Recovery attempts made
        max_attempts: Attempt budget for the strategy
        next_retry_at: ISO8601 time of the next automatic attempt, if any
        duration_ms: Wall time spent recovering
        context_json: Redacted operation context
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "error_records"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(50), nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recovery_strategy: Mapped[str] = mapped_column(String(30), nullable=False)
    recovery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RecoveryStatus.pending.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    context_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_error_records_category", "category", "recovery_status"),
        Index("idx_error_records_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ErrorRecord(id={self.id!r}, category={self.category!r}, "
            f"status={self.recovery_status!r})>"
        )


class CircuitBreakerRecord(Base):
    """Last persisted state of one circuit breaker."""

    __tablename__ = "circuit_breakers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    service_name: Mapped[str] = mapped_column(String(50), nullable=False)
    operation_name: Mapped[str] = mapped_column(String(50), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BreakerState.closed.value
    )
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_failure: Mapped[str | None] = mapped_column(String(50), nullable=True)
    next_attempt: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        UniqueConstraint(
            "service_name", "operation_name", name="uq_circuit_breakers_key"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CircuitBreakerRecord({self.service_name!r}/{self.operation_name!r}, "
            f"state={self.state!r})>"
        )


# Batch processing


class BatchJob(Base):
    """Bulk unit of work tracked at the item level.

    Attributes:
        id: UUID primary key
        job_type: sync, webhook or cleanup
        status: pending, running, completed, failed or scheduled
        priority: Lower values run first
        batch_size: Items per sub-batch
        payload_json: Job parameters as queued
        total_items: Number of items in the job
        processed_items: Items completed successfully
        failed_items: Items that failed on the latest run
        retry_count: Retries consumed so far
        max_retries: Retry budget
        next_retry: ISO8601 due time (retry or scheduled start)
        error_message: Latest failure summary
        created_at: ISO8601 timestamp of creation
        started_at: ISO8601 timestamp of the latest start
        completed_at: ISO8601 timestamp of the latest terminal transition
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "batch_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.pending.value
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_items: Mapped[int] = mapped_column(default=0, nullable=False)
    processed_items: Mapped[int] = mapped_column(default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(default=0, nullable=False)
    retry_count: Mapped[int] = mapped_column(default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(default=3, nullable=False)
    next_retry: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    started_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    items: Mapped[list["BatchItem"]] = relationship(
        "BatchItem", back_populates="job", cascade="all, delete-orphan"
    )
    progress: Mapped[list["BatchProgress"]] = relationship(
        "BatchProgress", back_populates="job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_batch_jobs_queue", "status", "priority", "created_at"),
        Index("idx_batch_jobs_next_retry", "next_retry"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchJob(id={self.id!r}, type={self.job_type!r}, "
            f"status={self.status!r})>"
        )


class BatchItem(Base):
    """Individual item within a batch job.

    Tracks per-item processing status so a restarted job only reprocesses
    pending and failed items.
    """

    __tablename__ = "batch_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False
    )
    item_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ItemStatus.pending.value
    )
    processing_order: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    job: Mapped["BatchJob"] = relationship("BatchJob", back_populates="items")

    __table_args__ = (
        UniqueConstraint(
            "job_id", "processing_order", name="uq_batch_items_job_order"
        ),
        Index("idx_batch_items_job_status", "job_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<BatchItem(id={self.id!r}, job_id={self.job_id!r}, "
            f"order={self.processing_order}, status={self.status!r})>"
        )


class BatchProgress(Base):
    """Progress report published after each sub-batch."""

    __tablename__ = "batch_progress"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False
    )
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    job: Mapped["BatchJob"] = relationship("BatchJob", back_populates="progress")

    __table_args__ = (
        Index("idx_batch_progress_job", "job_id", "created_at"),
    )


# Webhooks


class WebhookEvent(Base):
    """Inbound change notification from the remote store.

    Attributes:
        id: UUID primary key
        event_type: Topic such as customer.updated
        resource_id: Remote id of the changed resource
        payload_json: Raw JSON payload
        payload_hash: SHA-256 of the canonical payload
        idempotency_key: event_type:resource_id:payload_hash (NULL for rejected events)
        signature: Signature header as received
        source_ip: Sender address
        status: pending, processed or failed
        retry_count: Failed processing attempts so far
        next_attempt_at: ISO8601 time the drain loop may pick the event up
        error_message: Latest failure text
        received_at: ISO8601 intake timestamp
        processed_at: ISO8601 timestamp of successful processing
    """

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookStatus.pending.value
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    processed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_webhook_events_idempotency"),
        Index("idx_webhook_events_queue", "status", "next_attempt_at"),
        Index("idx_webhook_events_received_at", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id!r}, type={self.event_type!r}, "
            f"status={self.status!r})>"
        )


# Monitoring


class PerformanceLog(Base):
    """Timing sample for one monitored operation."""

    __tablename__ = "performance_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(nullable=False, default=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_performance_logs_op", "operation", "created_at"),
    )


class MonitoringAlert(Base):
    """Threshold alert raised by the monitoring service."""

    __tablename__ = "monitoring_alerts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AlertStatus.active.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    resolved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_monitoring_alerts_status", "alert_type", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<MonitoringAlert(type={self.alert_type!r}, "
            f"severity={self.severity!r}, status={self.status!r})>"
        )
