"""Tests for field-level conflict detection and resolution."""

import pytest
from sqlalchemy import func, select

from src.db.models import (
    ConflictBackup,
    ConflictStatus,
    ConflictType,
    EntityType,
    ResolutionStrategy,
    SyncConflict,
)
from src.errors.domain import InvalidStateTransition, NotFoundError
from src.services.conflict_resolver import (
    ConflictResolver,
    DetectedConflict,
    MergeTypeMismatch,
    ResolutionContext,
    determine_conflict_type,
    extract_timestamp,
    get_path,
    is_significant,
    load_value,
    merge_values,
    set_path,
    similarity,
    values_equal,
)
from src.services.events import SyncEventEmitter
from tests.helpers import make_customer


class EventRecorder:
    def __init__(self):
        self.detected = []
        self.resolved = []

    async def on_conflict_detected(self, sync_id, entity_type, entity_id, field_name, conflict_type):
        self.detected.append((entity_type, field_name, conflict_type))

    async def on_conflict_resolved(self, conflict_id, strategy, auto_resolved):
        self.resolved.append((strategy, auto_resolved))


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def resolver(clock, recorder):
    emitter = SyncEventEmitter()
    emitter.add_observer(recorder)
    return ConflictResolver(emitter=emitter, clock=clock)


def _local_customer(**overrides):
    snapshot = {
        "id": "local-1",
        "email": "a@x.com",
        "company_name": "Analytical Engines",
        "phone": "555-0100",
        "billing_address": None,
        "shipping_address": {"city": "London"},
        "updated_at": "2026-01-15T12:01:00+00:00",
    }
    snapshot.update(overrides)
    return snapshot


def _conflict(field_name="phone", local="555-9999", remote="555-0200", **kwargs):
    return DetectedConflict(
        entity_type=EntityType.customer,
        entity_id="local-1",
        field_name=field_name,
        conflict_type=ConflictType.value_difference,
        local_value=local,
        remote_value=remote,
        **kwargs,
    )


# =============================================================================
# Value helpers
# =============================================================================


class TestPaths:

    def test_get_path_nested_and_missing(self):
        data = {"billing": {"phone": "1"}}
        assert get_path(data, "billing.phone") == "1"
        assert get_path(data, "billing.city") is None
        assert get_path(data, "shipping.city") is None

    def test_set_path_creates_parents(self):
        data = {}
        set_path(data, "billing.company", "ACME")
        assert data == {"billing": {"company": "ACME"}}


class TestSignificance:
    """Only meaningful differences become conflicts."""

    def test_numeric_string_equals_number(self):
        assert values_equal("10.5", 10.5)
        assert values_equal({"a": 1, "b": 2}, {"b": 2, "a": 1})
        assert not values_equal(None, 0)

    def test_sub_cent_price_change_ignored(self):
        assert not is_significant(10.00, 10.005)

    def test_two_cent_price_change_significant(self):
        assert is_significant(10.00, 10.02)
        assert is_significant("10.00", 10.02)

    def test_near_identical_strings_ignored(self):
        text = "The quick brown fox jumps over the lazy dog"
        assert similarity(text, text + ".") >= 0.95
        assert not is_significant(text, text + ".")

    def test_short_string_edit_significant(self):
        assert is_significant("555-0100", "555-0200")

    def test_objects_always_significant(self):
        assert is_significant({"city": "London"}, {"city": "Paris"})

    def test_similarity_of_empty_strings(self):
        assert similarity("", "") == 1.0


class TestConflictType:

    @pytest.mark.parametrize(
        "field_name,local,remote,expected",
        [
            ("phone", 10, "x", ConflictType.type_mismatch),
            ("billing_address", {"a": 1}, {"a": 2}, ConflictType.object_difference),
            ("unit_price", 10.0, "12.00", ConflictType.price_difference),
            ("total_amount", 10.0, 12.0, ConflictType.price_difference),
            ("order_date", "2026-01-01", "2026-01-02", ConflictType.timestamp_difference),
            ("status", "processing", "completed", ConflictType.value_difference),
        ],
    )
    def test_first_matching_rule_wins(self, field_name, local, remote, expected):
        assert determine_conflict_type(field_name, local, remote) == expected


class TestMerge:
    """Merge works on whole values."""

    def test_objects_union_remote_wins_overlap(self):
        local = {"city": "London", "postcode": "N1"}
        remote = {"city": "Leeds", "country": "GB"}
        assert merge_values(local, remote) == {
            "city": "Leeds", "postcode": "N1", "country": "GB",
        }

    def test_lists_ordered_union(self):
        assert merge_values(["a", "b"], ["b", "c"]) == ["a", "b", "c"]

    def test_strings_keep_longer(self):
        assert merge_values("12 Main Street", "12 Main St") == "12 Main Street"
        assert merge_values("abcd", "wxyz") == "wxyz"

    def test_mismatch_raises(self):
        with pytest.raises(MergeTypeMismatch):
            merge_values("London", {"city": "London"})


class TestTimestamps:

    def test_extract_from_object_and_string(self):
        assert extract_timestamp({"date_modified": "2026-01-10T08:00:00"}).day == 10
        assert extract_timestamp("2026-01-11T08:00:00").day == 11
        assert extract_timestamp("not a date") is None

    def test_load_value(self):
        assert load_value(None) is None
        assert load_value('{"a": 1}') == {"a": 1}


# =============================================================================
# Detection
# =============================================================================


class TestDetect:

    def test_detects_only_significant_fields(self, resolver):
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = "555-0200"
        local = _local_customer(phone="555-9999")

        conflicts = resolver.detect(EntityType.customer, local, remote)

        assert [c.field_name for c in conflicts] == ["phone"]
        conflict = conflicts[0]
        assert conflict.entity_id == "local-1"
        assert conflict.conflict_type == ConflictType.value_difference
        assert conflict.local_value == "555-9999"
        assert conflict.remote_value == "555-0200"
        assert conflict.local_timestamp == "2026-01-15T12:01:00+00:00"
        assert conflict.remote_timestamp == "2026-01-10T08:00:00"

    def test_one_sided_null_is_not_a_conflict(self, resolver):
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = None
        local = _local_customer(phone="555-9999", company_name=None)

        assert resolver.detect(EntityType.customer, local, remote) == []

    def test_price_string_round_trip_is_not_a_conflict(self, resolver):
        local = {"id": "p-1", "name": "Widget", "unit_price": 10.0, "sku": "W-1"}
        remote = {"id": 7, "name": "Widget", "price": "10.00", "sku": "W-1"}
        assert resolver.detect(EntityType.product, local, remote) == []


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """Each strategy picks a value deterministically."""

    def test_timestamp_prefers_newer_local(self, resolver):
        conflict = _conflict(
            local_timestamp="2026-01-15T12:01:00+00:00",
            remote_timestamp="2026-01-10T08:00:00",
        )
        resolution = resolver.resolve(conflict, ResolutionStrategy.timestamp)
        assert resolution.value == "555-9999"
        assert resolution.auto_resolved is True

    def test_timestamp_prefers_newer_remote(self, resolver):
        conflict = _conflict(
            local_timestamp="2026-01-09T00:00:00+00:00",
            remote_timestamp="2026-01-10T08:00:00",
        )
        assert resolver.resolve(conflict, "timestamp").value == "555-0200"

    def test_timestamp_without_times_takes_remote(self, resolver):
        assert resolver.resolve(_conflict(), "timestamp").value == "555-0200"

    def test_context_timestamps_override(self, resolver):
        conflict = _conflict(
            local_timestamp="2026-01-09T00:00:00+00:00",
            remote_timestamp="2026-01-10T08:00:00",
        )
        context = ResolutionContext(local_timestamp="2026-02-01T00:00:00+00:00")
        assert resolver.resolve(conflict, "timestamp", context).value == "555-9999"

    def test_local_and_remote_wins(self, resolver):
        assert resolver.resolve(_conflict(), "local_wins").value == "555-9999"
        assert resolver.resolve(_conflict(), "remote_wins").value == "555-0200"

    def test_priority_uses_static_table(self, resolver):
        resolution = resolver.resolve(_conflict(), ResolutionStrategy.priority)
        assert resolution.value == "555-9999"
        assert resolution.strategy == ResolutionStrategy.priority

    def test_priority_context_table(self, resolver):
        context = ResolutionContext(priorities={"phone": ResolutionStrategy.remote_wins})
        assert resolver.resolve(_conflict(), "priority", context).value == "555-0200"

    def test_merge_objects(self, resolver):
        conflict = _conflict(
            field_name="billing_address",
            local={"city": "London", "postcode": "N1"},
            remote={"city": "Leeds"},
        )
        resolution = resolver.resolve(conflict, "merge")
        assert resolution.value == {"city": "Leeds", "postcode": "N1"}
        assert resolution.strategy == ResolutionStrategy.merge

    def test_merge_mismatch_falls_back_to_timestamp(self, resolver):
        conflict = _conflict(
            field_name="shipping_address",
            local="London",
            remote={"city": "London"},
            local_timestamp="2026-01-15T12:01:00+00:00",
            remote_timestamp="2026-01-10T08:00:00",
        )
        resolution = resolver.resolve(conflict, "merge")
        assert resolution.strategy == ResolutionStrategy.timestamp
        assert resolution.value == "London"

    def test_manual_is_not_auto_resolved(self, resolver):
        resolution = resolver.resolve(_conflict(), "manual")
        assert resolution.auto_resolved is False
        assert resolution.requires_manual_review is True

    def test_unknown_strategy_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve(_conflict(), "coin_flip")


class TestSelectStrategy:
    """Override, then custom rule, then static priority, then default."""

    @pytest.mark.asyncio
    async def test_override_wins(self, resolver, session_factory):
        async with session_factory() as session:
            strategy = await resolver.select_strategy(session, _conflict(), "remote_wins")
        assert strategy == ResolutionStrategy.remote_wins

    @pytest.mark.asyncio
    async def test_static_priority(self, resolver, session_factory):
        async with session_factory() as session:
            phone = await resolver.select_strategy(session, _conflict())
            billing = await resolver.select_strategy(
                session, _conflict(field_name="billing_address")
            )
        assert phone == ResolutionStrategy.local_wins
        assert billing == ResolutionStrategy.merge

    @pytest.mark.asyncio
    async def test_default_for_unlisted_field(self, resolver, session_factory):
        async with session_factory() as session:
            strategy = await resolver.select_strategy(session, _conflict(field_name="nickname"))
        assert strategy == ResolutionStrategy.timestamp

    @pytest.mark.asyncio
    async def test_field_rule_beats_entity_rule(self, resolver, session_factory):
        async with session_factory() as session:
            await resolver.add_rule(session, EntityType.customer, "remote_wins")
            await resolver.add_rule(
                session, EntityType.customer, "manual", field_name="phone"
            )
            phone = await resolver.select_strategy(session, _conflict())
            email = await resolver.select_strategy(session, _conflict(field_name="email"))
        assert phone == ResolutionStrategy.manual
        assert email == ResolutionStrategy.remote_wins

    @pytest.mark.asyncio
    async def test_lower_priority_number_wins(self, resolver, session_factory):
        async with session_factory() as session:
            await resolver.add_rule(
                session, EntityType.customer, "manual", field_name="phone", priority=50
            )
            await resolver.add_rule(
                session, EntityType.customer, "remote_wins", priority=10
            )
            strategy = await resolver.select_strategy(session, _conflict())
        assert strategy == ResolutionStrategy.remote_wins


# =============================================================================
# Persistence
# =============================================================================


class TestProcess:

    @pytest.mark.asyncio
    async def test_auto_resolved_conflicts_recorded(
        self, resolver, recorder, session_factory
    ):
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = "555-0200"
        local = _local_customer(phone="555-9999")

        async with session_factory() as session:
            outcome = await resolver.process(
                session, EntityType.customer, local, remote,
                sync_id="sync-1", entity_id="local-1",
            )
            await session.commit()

        assert outcome.has_conflicts
        assert outcome.requires_manual is False
        assert outcome.resolved_values == {"phone": "555-9999"}

        async with session_factory() as session:
            rows = (await session.execute(select(SyncConflict))).scalars().all()
            backups = await session.scalar(select(func.count()).select_from(ConflictBackup))

        assert len(rows) == 1
        row = rows[0]
        assert row.status == ConflictStatus.resolved.value
        assert row.strategy == "local_wins"
        assert row.resolved_by == "system"
        assert load_value(row.resolved_value_json) == "555-9999"
        assert backups == 1
        assert recorder.detected == [("customer", "phone", "value_difference")]
        assert recorder.resolved == [("local_wins", True)]
        assert resolver.stats == {"total": 1, "auto_resolved": 1, "manual": 0}

    @pytest.mark.asyncio
    async def test_no_conflicts_writes_nothing(self, resolver, session_factory):
        remote = make_customer(1, "a@x.com")
        async with session_factory() as session:
            outcome = await resolver.process(
                session, EntityType.customer, _local_customer(), remote
            )
            await session.commit()
            count = await session.scalar(select(func.count()).select_from(SyncConflict))
        assert not outcome.has_conflicts
        assert count == 0

    @pytest.mark.asyncio
    async def test_manual_rule_leaves_conflict_pending(self, resolver, session_factory):
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = "555-0200"

        async with session_factory() as session:
            await resolver.add_rule(session, "customer", "manual", field_name="phone")
            outcome = await resolver.process(
                session, EntityType.customer, _local_customer(phone="555-9999"), remote,
                entity_id="local-1",
            )
            await session.commit()

        assert outcome.requires_manual is True
        assert outcome.resolved_values == {}

        async with session_factory() as session:
            pending = await resolver.get_pending_conflicts(session)
        assert [c.field_name for c in pending] == ["phone"]
        assert pending[0].resolved_value_json is None


class TestManualResolution:

    async def _pending_conflict_id(self, resolver, session_factory) -> str:
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = "555-0200"
        async with session_factory() as session:
            outcome = await resolver.process(
                session, EntityType.customer, _local_customer(phone="555-9999"), remote,
                override="manual",
            )
            await session.commit()
        return outcome.conflicts[0].id

    @pytest.mark.asyncio
    async def test_resolve_manually(self, resolver, recorder, session_factory):
        conflict_id = await self._pending_conflict_id(resolver, session_factory)

        async with session_factory() as session:
            conflict = await resolver.resolve_manually(
                session, conflict_id, "555-1234", resolved_by="ops"
            )
            await session.commit()

        assert conflict.status == ConflictStatus.resolved.value
        assert conflict.resolved_by == "ops"
        assert load_value(conflict.resolved_value_json) == "555-1234"
        assert ("manual", False) in recorder.resolved

    @pytest.mark.asyncio
    async def test_resolving_twice_rejected(self, resolver, session_factory):
        conflict_id = await self._pending_conflict_id(resolver, session_factory)
        async with session_factory() as session:
            await resolver.resolve_manually(session, conflict_id, "555-1234")
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(InvalidStateTransition):
                await resolver.resolve_manually(session, conflict_id, "555-0000")

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, resolver, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await resolver.resolve_manually(session, "missing", "x")


class TestConflictStats:

    @pytest.mark.asyncio
    async def test_stats_group_by_status_and_entity(self, resolver, session_factory):
        remote = make_customer(1, "a@x.com")
        remote["billing"]["phone"] = "555-0200"
        async with session_factory() as session:
            await resolver.process(
                session, EntityType.customer, _local_customer(phone="555-9999"), remote
            )
            await resolver.process(
                session, EntityType.customer, _local_customer(phone="555-9999"), remote,
                override="manual",
            )
            await session.commit()
            stats = await resolver.get_conflict_stats(session)

        assert stats["total"] == 2
        assert stats["by_status"] == {"resolved": 1, "pending": 1}
        assert stats["by_entity_type"] == {"customer": 2}
        assert stats["auto_resolved"] == 1
        assert stats["session_stats"]["manual"] == 1
