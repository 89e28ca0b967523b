"""Field-level conflict detection and resolution.

Detection compares a local snapshot (local column names) against a raw
remote record through a per-entity field map. A field conflicts only
when both sides are non-null, differ, and the difference is significant:
numeric deltas of at least 0.01, or strings whose normalized Levenshtein
similarity is below 0.95. A one-sided null is never a conflict.

Strategy selection order: explicit override, custom rule table, static
field-priority table, global default. Merge is all-or-nothing: any type
mismatch falls back to the timestamp strategy for the whole value.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import (
    ConflictBackup,
    ConflictRule,
    ConflictStatus,
    ConflictType,
    EntityType,
    ResolutionStrategy,
    SyncConflict,
    generate_uuid,
)
from src.errors.domain import InvalidStateTransition, NotFoundError
from src.services.events import SyncEventEmitter
from src.utils.clock import Clock, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

# Local field -> remote dotted path
FIELD_MAPS: dict[EntityType, dict[str, str]] = {
    EntityType.customer: {
        "company_name": "billing.company",
        "email": "email",
        "phone": "billing.phone",
        "billing_address": "billing",
        "shipping_address": "shipping",
    },
    EntityType.product: {
        "name": "name",
        "unit_price": "price",
        "cost_price": "regular_price",
        "description": "description",
        "sku": "sku",
        "stock_quantity": "stock_quantity",
    },
    EntityType.order: {
        "status": "status",
        "total_amount": "total",
        "subtotal": "subtotal",
        "tax_amount": "total_tax",
        "shipping_cost": "shipping_total",
        "shipping_address": "shipping",
    },
}

# Static per-entity field priorities
FIELD_PRIORITIES: dict[EntityType, dict[str, ResolutionStrategy]] = {
    EntityType.customer: {
        "email": ResolutionStrategy.remote_wins,
        "phone": ResolutionStrategy.local_wins,
        "billing_address": ResolutionStrategy.merge,
        "shipping_address": ResolutionStrategy.merge,
        "company_name": ResolutionStrategy.timestamp,
    },
    EntityType.product: {
        "name": ResolutionStrategy.remote_wins,
        "unit_price": ResolutionStrategy.local_wins,
        "cost_price": ResolutionStrategy.local_wins,
        "stock_quantity": ResolutionStrategy.local_wins,
        "description": ResolutionStrategy.remote_wins,
        "sku": ResolutionStrategy.remote_wins,
    },
    EntityType.order: {
        "status": ResolutionStrategy.timestamp,
        "total_amount": ResolutionStrategy.remote_wins,
        "subtotal": ResolutionStrategy.remote_wins,
        "tax_amount": ResolutionStrategy.remote_wins,
        "shipping_cost": ResolutionStrategy.remote_wins,
        "shipping_address": ResolutionStrategy.merge,
    },
}

DEFAULT_STRATEGY = ResolutionStrategy.timestamp

NUMERIC_TOLERANCE = 0.01
STRING_SIMILARITY_THRESHOLD = 0.95

_PRICE_FIELD_HINTS = ("price", "total", "amount", "cost")
_TIME_FIELD_HINTS = ("date", "time")
_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
_TIMESTAMP_KEYS = ("date_modified", "updated_at", "created_at")


class MergeTypeMismatch(Exception):
    """Raised when two values cannot be merged as a whole."""

    pass


@dataclass
class DetectedConflict:
    """A significant divergence on one field of one record."""

    entity_type: EntityType
    entity_id: str
    field_name: str
    conflict_type: ConflictType
    local_value: Any
    remote_value: Any
    local_timestamp: str | None = None
    remote_timestamp: str | None = None
    id: str | None = None


@dataclass
class ResolutionContext:
    """Extra inputs a strategy may consult.

    Attributes:
        local_timestamp: Overrides the conflict's local timestamp.
        remote_timestamp: Overrides the conflict's remote timestamp.
        priorities: Field -> source-wins table replacing the static one.
    """

    local_timestamp: str | None = None
    remote_timestamp: str | None = None
    priorities: dict[str, ResolutionStrategy] | None = None


@dataclass
class Resolution:
    """Outcome of applying one strategy to one conflict."""

    value: Any
    strategy: ResolutionStrategy
    auto_resolved: bool = True
    requires_manual_review: bool = False


@dataclass
class ConflictOutcome:
    """Result of processing all conflicts of one record.

    Attributes:
        conflicts: Persisted conflicts (ids assigned).
        resolutions: Resolution per conflict, same order.
        resolved_values: Local field -> value for auto-resolved conflicts.
        requires_manual: True if any conflict awaits human review.
    """

    conflicts: list[DetectedConflict] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)
    resolved_values: dict[str, Any] = field(default_factory=dict)
    requires_manual: bool = False

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


# Value helpers


def get_path(data: Any, path: str) -> Any:
    """Read a dotted path from nested dicts, returning None when absent."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    """Write a value at a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _numeric_pair(a: Any, b: Any) -> tuple[float, float] | None:
    """Both values as numbers when at least one is a real number."""
    if not (_is_number(a) or _is_number(b)):
        return None
    na, nb = _as_number(a), _as_number(b)
    if na is None or nb is None:
        return None
    return na, nb


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def values_equal(a: Any, b: Any) -> bool:
    """Compare two field values the way the remote store round-trips them.

    Numbers equal their numeric-string form ("10.5" == 10.5); objects and
    lists compare by canonical JSON.
    """
    if a is None or b is None:
        return a is None and b is None
    pair = _numeric_pair(a, b)
    if pair is not None:
        return abs(pair[0] - pair[1]) < 1e-9
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return _canonical(a) == _canonical(b)
    return a == b


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity: (len(longer) - distance) / len(longer)."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


def is_significant(local: Any, remote: Any) -> bool:
    """Decide whether a difference between two non-null values matters."""
    pair = _numeric_pair(local, remote)
    if pair is not None:
        return round(abs(pair[0] - pair[1]), 9) >= NUMERIC_TOLERANCE
    if isinstance(local, str) and isinstance(remote, str):
        return similarity(local, remote) < STRING_SIMILARITY_THRESHOLD
    return True


def _type_name(value: Any) -> str:
    if _is_number(value):
        return "number"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def determine_conflict_type(field_name: str, local: Any, remote: Any) -> ConflictType:
    """Classify a divergence; the first matching rule wins.

    A number and its numeric-string form count as the same type.
    """
    numeric = _numeric_pair(local, remote) is not None
    if not numeric and _type_name(local) != _type_name(remote):
        return ConflictType.type_mismatch
    if isinstance(local, (dict, list)):
        return ConflictType.object_difference
    lowered = field_name.lower()
    if any(hint in lowered for hint in _PRICE_FIELD_HINTS):
        return ConflictType.price_difference
    if any(hint in lowered for hint in _TIME_FIELD_HINTS):
        return ConflictType.timestamp_difference
    return ConflictType.value_difference


def extract_timestamp(value: Any) -> datetime | None:
    """Pull a timestamp out of a value (object timestamp keys or date string)."""
    if isinstance(value, dict):
        for key in _TIMESTAMP_KEYS:
            parsed = parse_iso(value.get(key)) if isinstance(value.get(key), str) else None
            if parsed is not None:
                return parsed
        return None
    if isinstance(value, str) and _DATE_PATTERN.match(value):
        return parse_iso(value)
    return None


def merge_values(local: Any, remote: Any) -> Any:
    """Merge two values as a whole.

    Objects union with remote winning on overlapping keys; arrays take the
    ordered set union (local first); strings keep the longer one (remote on
    ties).

    Raises:
        MergeTypeMismatch: If the two values are not the same mergeable kind.
    """
    if isinstance(local, dict) and isinstance(remote, dict):
        return {**local, **remote}
    if isinstance(local, list) and isinstance(remote, list):
        merged: list[Any] = []
        seen: set[str] = set()
        for item in [*local, *remote]:
            key = _canonical(item)
            if key not in seen:
                seen.add(key)
                merged.append(item)
        return merged
    if isinstance(local, str) and isinstance(remote, str):
        return local if len(local) > len(remote) else remote
    raise MergeTypeMismatch(
        f"Cannot merge {_type_name(local)} with {_type_name(remote)}"
    )


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_value(raw: str | None) -> Any:
    """Decode a JSON-encoded conflict value column."""
    if raw is None:
        return None
    return json.loads(raw)


class ConflictResolver:
    """Detects, resolves and records field conflicts.

    Attributes:
        emitter: Event channel for conflict_detected / conflict_resolved.
        default_strategy: Strategy used when nothing more specific applies.
        stats: In-memory counters (total, auto_resolved, manual).
    """

    def __init__(
        self,
        emitter: SyncEventEmitter | None = None,
        default_strategy: ResolutionStrategy = DEFAULT_STRATEGY,
        clock: Clock = utc_now,
    ) -> None:
        self.emitter = emitter or SyncEventEmitter()
        self.default_strategy = default_strategy
        self.clock = clock
        self.stats = {"total": 0, "auto_resolved": 0, "manual": 0}

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(
        self,
        entity_type: EntityType | str,
        local: dict[str, Any],
        remote: dict[str, Any],
        entity_id: str | None = None,
    ) -> list[DetectedConflict]:
        """Compare two snapshots field by field.

        Args:
            entity_type: Entity type selecting the field map.
            local: Local snapshot keyed by local field names, with ``updated_at``.
            remote: Raw remote record, with ``date_modified``.
            entity_id: Id recorded on the conflicts (defaults to local["id"]).

        Returns:
            Significant conflicts, in field-map order.
        """
        entity = EntityType(entity_type)
        record_id = str(entity_id or local.get("id") or remote.get("id") or "")
        local_ts = local.get("updated_at")
        remote_ts = remote.get("date_modified_gmt") or remote.get("date_modified")

        conflicts = []
        for local_field, remote_path in FIELD_MAPS[entity].items():
            local_value = get_path(local, local_field)
            remote_value = get_path(remote, remote_path)

            if local_value is None or remote_value is None:
                continue
            if values_equal(local_value, remote_value):
                continue
            if not is_significant(local_value, remote_value):
                continue

            conflicts.append(DetectedConflict(
                entity_type=entity,
                entity_id=record_id,
                field_name=local_field,
                conflict_type=determine_conflict_type(local_field, local_value, remote_value),
                local_value=local_value,
                remote_value=remote_value,
                local_timestamp=local_ts,
                remote_timestamp=remote_ts,
            ))
        return conflicts

    # =========================================================================
    # Strategy selection and resolution
    # =========================================================================

    async def get_custom_rule(
        self, session: AsyncSession, conflict: DetectedConflict
    ) -> ConflictRule | None:
        """Best matching active custom rule, preferring specific fields."""
        result = await session.execute(
            select(ConflictRule)
            .where(
                ConflictRule.entity_type == conflict.entity_type.value,
                ConflictRule.active.is_(True),
                (ConflictRule.field_name == conflict.field_name)
                | ConflictRule.field_name.is_(None),
                (ConflictRule.conflict_type == conflict.conflict_type.value)
                | ConflictRule.conflict_type.is_(None),
            )
            .order_by(
                ConflictRule.priority.asc(),
                case((ConflictRule.field_name.is_(None), 1), else_=0),
                ConflictRule.created_at.asc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def select_strategy(
        self,
        session: AsyncSession,
        conflict: DetectedConflict,
        override: ResolutionStrategy | str | None = None,
    ) -> ResolutionStrategy:
        """Pick the strategy for a conflict.

        Order: explicit override, custom rule, static field priority,
        global default.
        """
        if override is not None:
            return ResolutionStrategy(override)
        rule = await self.get_custom_rule(session, conflict)
        if rule is not None:
            return ResolutionStrategy(rule.strategy)
        static = FIELD_PRIORITIES.get(conflict.entity_type, {}).get(conflict.field_name)
        if static is not None:
            return static
        return self.default_strategy

    def resolve(
        self,
        conflict: DetectedConflict,
        strategy: ResolutionStrategy | str,
        context: ResolutionContext | None = None,
    ) -> Resolution:
        """Apply one strategy to a conflict.

        Args:
            conflict: Conflict to resolve.
            strategy: Strategy to apply.
            context: Optional timestamps / priority table overrides.

        Returns:
            The resolution. Merge falls back to timestamp (reported as such)
            when the values cannot be merged.

        Raises:
            ValueError: If the strategy is not a known ResolutionStrategy.
        """
        strategy = ResolutionStrategy(strategy)
        context = context or ResolutionContext()

        if strategy == ResolutionStrategy.timestamp:
            return self._resolve_by_timestamp(conflict, context)
        elif strategy == ResolutionStrategy.priority:
            return self._resolve_by_priority(conflict, context)
        elif strategy == ResolutionStrategy.merge:
            try:
                merged = merge_values(conflict.local_value, conflict.remote_value)
            except MergeTypeMismatch as e:
                logger.info(
                    "Merge of %s.%s fell back to timestamp: %s",
                    conflict.entity_type.value, conflict.field_name, e,
                )
                return self._resolve_by_timestamp(conflict, context)
            return Resolution(value=merged, strategy=ResolutionStrategy.merge)
        elif strategy == ResolutionStrategy.manual:
            return Resolution(
                value=conflict.remote_value,
                strategy=ResolutionStrategy.manual,
                auto_resolved=False,
                requires_manual_review=True,
            )
        elif strategy == ResolutionStrategy.remote_wins:
            return Resolution(value=conflict.remote_value, strategy=strategy)
        elif strategy == ResolutionStrategy.local_wins:
            return Resolution(value=conflict.local_value, strategy=strategy)
        raise ValueError(f"Unhandled resolution strategy: {strategy}")

    def _resolve_by_timestamp(
        self, conflict: DetectedConflict, context: ResolutionContext
    ) -> Resolution:
        local_time = (
            parse_iso(context.local_timestamp or conflict.local_timestamp)
            or extract_timestamp(conflict.local_value)
        )
        remote_time = (
            parse_iso(context.remote_timestamp or conflict.remote_timestamp)
            or extract_timestamp(conflict.remote_value)
        )
        if local_time is None and remote_time is None:
            value = conflict.remote_value
        elif local_time is None or (remote_time is not None and remote_time > local_time):
            value = conflict.remote_value
        else:
            value = conflict.local_value
        return Resolution(value=value, strategy=ResolutionStrategy.timestamp)

    def _resolve_by_priority(
        self, conflict: DetectedConflict, context: ResolutionContext
    ) -> Resolution:
        priorities = context.priorities or FIELD_PRIORITIES.get(conflict.entity_type, {})
        winner = priorities.get(conflict.field_name)
        if winner == ResolutionStrategy.remote_wins:
            return Resolution(value=conflict.remote_value, strategy=ResolutionStrategy.priority)
        if winner == ResolutionStrategy.local_wins:
            return Resolution(value=conflict.local_value, strategy=ResolutionStrategy.priority)
        return self._resolve_by_timestamp(conflict, context)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def process(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        local: dict[str, Any],
        remote: dict[str, Any],
        sync_id: str | None = None,
        entity_id: str | None = None,
        override: ResolutionStrategy | str | None = None,
    ) -> ConflictOutcome:
        """Detect, resolve and record the conflicts of one record.

        Every conflict is persisted with a backup of the local snapshot.
        Auto-resolved conflicts are stored as resolved; manual ones stay
        pending for review. A field that already has a pending conflict
        for the record reuses that row instead of adding another.

        Args:
            session: Active session; the caller commits.
            entity_type: Entity type of the record.
            local: Local snapshot.
            remote: Raw remote record.
            sync_id: Owning sync session, if any.
            entity_id: Local record id.
            override: Explicit strategy for every conflict.

        Returns:
            ConflictOutcome describing what was found and decided.
        """
        outcome = ConflictOutcome()
        detected = self.detect(entity_type, local, remote, entity_id=entity_id)
        if not detected:
            return outcome

        now = to_iso(self.clock())
        backup = json.dumps(local, default=str)
        for conflict in detected:
            strategy = await self.select_strategy(session, conflict, override)
            resolution = self.resolve(conflict, strategy)
            pending = (
                None if resolution.auto_resolved
                else await self._find_pending(session, conflict)
            )

            if pending is not None:
                # Same field still awaiting review: refresh it in place
                conflict.id = pending.id
                pending.sync_id = sync_id
                pending.conflict_type = conflict.conflict_type.value
                pending.local_value_json = _dump(conflict.local_value)
                pending.remote_value_json = _dump(conflict.remote_value)
                pending.strategy = resolution.strategy.value
                pending.local_timestamp = conflict.local_timestamp
                pending.remote_timestamp = conflict.remote_timestamp
            else:
                conflict.id = generate_uuid()
                session.add(SyncConflict(
                    id=conflict.id,
                    sync_id=sync_id,
                    entity_type=conflict.entity_type.value,
                    entity_id=conflict.entity_id,
                    field_name=conflict.field_name,
                    conflict_type=conflict.conflict_type.value,
                    local_value_json=_dump(conflict.local_value),
                    remote_value_json=_dump(conflict.remote_value),
                    resolved_value_json=(
                        _dump(resolution.value) if resolution.auto_resolved else None
                    ),
                    strategy=resolution.strategy.value,
                    status=(
                        ConflictStatus.resolved.value if resolution.auto_resolved
                        else ConflictStatus.pending.value
                    ),
                    auto_resolved=resolution.auto_resolved,
                    resolved_by="system" if resolution.auto_resolved else None,
                    resolved_at=now if resolution.auto_resolved else None,
                    local_timestamp=conflict.local_timestamp,
                    remote_timestamp=conflict.remote_timestamp,
                    created_at=now,
                ))
                session.add(ConflictBackup(
                    conflict_id=conflict.id,
                    entity_type=conflict.entity_type.value,
                    entity_id=conflict.entity_id,
                    original_json=backup,
                    created_at=now,
                ))

            outcome.conflicts.append(conflict)
            outcome.resolutions.append(resolution)
            self.stats["total"] += 1
            if resolution.auto_resolved:
                self.stats["auto_resolved"] += 1
                outcome.resolved_values[conflict.field_name] = resolution.value
            else:
                self.stats["manual"] += 1
                outcome.requires_manual = True

        logger.info(
            "Detected %d conflict(s) for %s %s (manual=%s)",
            len(detected), EntityType(entity_type).value, entity_id, outcome.requires_manual,
        )
        for conflict, resolution in zip(outcome.conflicts, outcome.resolutions):
            await self.emitter.emit_conflict_detected(
                sync_id,
                conflict.entity_type.value,
                conflict.entity_id,
                conflict.field_name,
                conflict.conflict_type.value,
            )
            if resolution.auto_resolved:
                await self.emitter.emit_conflict_resolved(
                    conflict.id, resolution.strategy.value, True
                )
        return outcome

    async def _find_pending(
        self, session: AsyncSession, conflict: DetectedConflict
    ) -> SyncConflict | None:
        result = await session.execute(
            select(SyncConflict)
            .where(
                SyncConflict.entity_type == conflict.entity_type.value,
                SyncConflict.entity_id == conflict.entity_id,
                SyncConflict.field_name == conflict.field_name,
                SyncConflict.status == ConflictStatus.pending.value,
            )
            .order_by(SyncConflict.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_pending_conflicts(
        self, session: AsyncSession, limit: int = 50
    ) -> list[SyncConflict]:
        """Oldest pending conflicts awaiting manual resolution."""
        result = await session.execute(
            select(SyncConflict)
            .where(SyncConflict.status == ConflictStatus.pending.value)
            .order_by(SyncConflict.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def resolve_manually(
        self,
        session: AsyncSession,
        conflict_id: str,
        value: Any,
        resolved_by: str = "manual",
    ) -> SyncConflict:
        """Record a human decision for a pending conflict.

        Raises:
            NotFoundError: If the conflict does not exist.
            InvalidStateTransition: If the conflict is not pending.
        """
        conflict = await session.get(SyncConflict, conflict_id)
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        if conflict.status != ConflictStatus.pending.value:
            raise InvalidStateTransition(
                "Conflict", conflict.status, ConflictStatus.resolved
            )
        conflict.resolved_value_json = _dump(value)
        conflict.status = ConflictStatus.resolved.value
        conflict.strategy = ResolutionStrategy.manual.value
        conflict.auto_resolved = False
        conflict.resolved_by = resolved_by
        conflict.resolved_at = to_iso(self.clock())
        await session.flush()
        await self.emitter.emit_conflict_resolved(
            conflict.id, ResolutionStrategy.manual.value, False
        )
        return conflict

    async def add_rule(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        strategy: ResolutionStrategy | str,
        field_name: str | None = None,
        conflict_type: ConflictType | str | None = None,
        priority: int = 100,
    ) -> ConflictRule:
        """Add a custom resolution rule."""
        rule = ConflictRule(
            entity_type=EntityType(entity_type).value,
            field_name=field_name,
            conflict_type=ConflictType(conflict_type).value if conflict_type else None,
            strategy=ResolutionStrategy(strategy).value,
            priority=priority,
            active=True,
            created_at=to_iso(self.clock()),
        )
        session.add(rule)
        await session.flush()
        return rule

    async def get_conflict_stats(self, session: AsyncSession) -> dict[str, Any]:
        """Aggregate recorded conflicts by status and entity type."""
        by_status = await session.execute(
            select(SyncConflict.status, func.count()).group_by(SyncConflict.status)
        )
        by_entity = await session.execute(
            select(SyncConflict.entity_type, func.count()).group_by(SyncConflict.entity_type)
        )
        auto = await session.execute(
            select(func.count()).select_from(SyncConflict).where(
                SyncConflict.auto_resolved.is_(True)
            )
        )
        status_counts = {status: count for status, count in by_status.all()}
        return {
            "total": sum(status_counts.values()),
            "by_status": status_counts,
            "by_entity_type": {entity: count for entity, count in by_entity.all()},
            "auto_resolved": int(auto.scalar_one()),
            "session_stats": dict(self.stats),
        }
