"""Tests for the local <-> remote entity mapping store."""

import json

import pytest
from sqlalchemy import func, select

from src.db.models import EntityMapping, EntityType, SyncDirection
from src.services.mapping_store import EntityMappingStore


@pytest.fixture
def store(clock) -> EntityMappingStore:
    return EntityMappingStore(clock=clock)


async def _row_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(EntityMapping))


class TestLookup:
    """get() needs exactly one id."""

    @pytest.mark.asyncio
    async def test_requires_exactly_one_id(self, store, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await store.get(session, EntityType.customer)
            with pytest.raises(ValueError):
                await store.get(session, EntityType.customer, local_id="l", remote_id="1")

    @pytest.mark.asyncio
    async def test_lookup_both_directions(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.customer, "local-1", 42)
            await session.commit()

        async with session_factory() as session:
            by_local = await store.get_by_local(session, "customer", "local-1")
            by_remote = await store.get_by_remote(session, EntityType.customer, 42)
            other_type = await store.get_by_remote(session, EntityType.product, 42)

        assert by_local.remote_id == "42"
        assert by_remote.local_id == "local-1"
        assert other_type is None


class TestUpsert:
    """upsert() keeps one row per local record and per remote record."""

    @pytest.mark.asyncio
    async def test_repeated_upsert_keeps_single_row(self, store, session_factory, clock):
        async with session_factory() as session:
            first = await store.upsert(
                session, EntityType.product, "p-1", "7", metadata={"sku": "W-7"}
            )
            await session.commit()
        clock.advance(60)
        async with session_factory() as session:
            second = await store.upsert(
                session, EntityType.product, "p-1", "7",
                metadata={"sku": "W-7", "v": 2},
                remote_modified_at="2026-01-15T12:00:00",
            )
            await session.commit()

        async with session_factory() as session:
            mapping = await store.get_by_local(session, EntityType.product, "p-1")
            count = await _row_count(session)

        assert first == second
        assert count == 1
        assert json.loads(mapping.metadata_json) == {"sku": "W-7", "v": 2}
        assert mapping.last_sync_at == "2026-01-15T12:01:00+00:00"
        assert mapping.remote_modified_at == "2026-01-15T12:00:00"

    @pytest.mark.asyncio
    async def test_metadata_kept_when_not_supplied(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.order, "o-1", "5", metadata={"n": 1})
            await store.upsert(session, EntityType.order, "o-1", "5")
            await session.commit()
            mapping = await store.get_by_local(session, EntityType.order, "o-1")
        assert json.loads(mapping.metadata_json) == {"n": 1}

    @pytest.mark.asyncio
    async def test_remote_id_moved_to_new_local_record(self, store, session_factory):
        """A remote id re-pointed at another local record replaces the stale row."""
        async with session_factory() as session:
            await store.upsert(session, EntityType.customer, "old-local", "9")
            await store.upsert(session, EntityType.customer, "new-local", "9")
            await session.commit()

        async with session_factory() as session:
            stale = await store.get_by_local(session, EntityType.customer, "old-local")
            current = await store.get_by_remote(session, EntityType.customer, "9")
            count = await _row_count(session)

        assert stale is None
        assert current.local_id == "new-local"
        assert count == 1

    @pytest.mark.asyncio
    async def test_upsert_reactivates(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.product, "p-1", "7")
            await store.deactivate(session, EntityType.product, remote_id="7")
            await store.upsert(session, EntityType.product, "p-1", "7")
            await session.commit()
            mapping = await store.get_by_local(session, EntityType.product, "p-1")
        assert mapping is not None
        assert mapping.active is True

    @pytest.mark.asyncio
    async def test_direction_kept_unless_given(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(
                session, EntityType.product, "p-1", "7", direction=SyncDirection.pull
            )
            await store.upsert(session, EntityType.product, "p-1", "7")
            await store.upsert(session, EntityType.product, "p-2", "8")
            await session.commit()
            pull_only = await store.get_by_local(session, EntityType.product, "p-1")
            default = await store.get_by_local(session, EntityType.product, "p-2")

        assert pull_only.sync_direction == SyncDirection.pull.value
        assert default.sync_direction == SyncDirection.both.value

    @pytest.mark.asyncio
    async def test_unsynced_upsert_keeps_last_sync_at(self, store, session_factory, clock):
        async with session_factory() as session:
            await store.upsert(session, EntityType.product, "p-1", "7")
            await store.upsert(session, EntityType.product, "p-2", "8", mark_synced=False)
            await session.commit()
        clock.advance(60)
        async with session_factory() as session:
            await store.upsert(session, EntityType.product, "p-1", "7", mark_synced=False)
            await session.commit()
            kept = await store.get_by_local(session, EntityType.product, "p-1")
            fresh = await store.get_by_local(session, EntityType.product, "p-2")

        assert kept.last_sync_at == "2026-01-15T12:00:00+00:00"
        assert fresh.last_sync_at is None


class TestDeactivate:

    @pytest.mark.asyncio
    async def test_deactivate_hides_mapping(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.order, "o-1", "5")
            changed = await store.deactivate(session, EntityType.order, remote_id=5)
            again = await store.deactivate(session, EntityType.order, remote_id=5)
            await session.commit()

            active = await store.get_by_remote(session, EntityType.order, 5)
            inactive = await store.get(
                session, EntityType.order, remote_id=5, include_inactive=True
            )

        assert changed == 1
        assert again == 0
        assert active is None
        assert inactive.active is False

    @pytest.mark.asyncio
    async def test_deactivate_requires_one_id(self, store, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValueError):
                await store.deactivate(session, EntityType.order)


class TestListing:

    @pytest.mark.asyncio
    async def test_list_pushable_skips_pull_only_and_inactive(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.product, "p-1", "1")
            await store.upsert(
                session, EntityType.product, "p-2", "2", direction=SyncDirection.pull
            )
            await store.upsert(
                session, EntityType.product, "p-3", "3", direction=SyncDirection.push
            )
            await store.upsert(session, EntityType.product, "p-4", "4")
            await store.deactivate(session, EntityType.product, local_id="p-4")
            await session.commit()

            pushable = await store.list_pushable(session, EntityType.product, limit=10)

        assert {m.local_id for m in pushable} == {"p-1", "p-3"}

    @pytest.mark.asyncio
    async def test_count(self, store, session_factory):
        async with session_factory() as session:
            await store.upsert(session, EntityType.product, "p-1", "1")
            await store.upsert(session, EntityType.customer, "c-1", "1")
            await session.commit()

            assert await store.count(session) == 2
            assert await store.count(session, EntityType.customer) == 1
