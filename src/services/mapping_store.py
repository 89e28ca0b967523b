"""Entity mapping store: persistent local <-> remote id associations.

The store drives the sync engine's create-vs-update decision. Writes are
atomic INSERT ... ON CONFLICT DO UPDATE statements so concurrent webhook,
batch and sync activity can never produce duplicate mapping rows.

Methods take the caller's AsyncSession so a mapping write commits in the
same transaction as the local record write it describes.
"""

import json
import logging
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import EntityMapping, EntityType, SyncDirection
from src.db.upsert import upsert
from src.utils.clock import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

PUSHABLE_DIRECTIONS = (SyncDirection.both.value, SyncDirection.push.value)


class EntityMappingStore:
    """Bidirectional id mapping per entity type.

    Attributes:
        clock: Time source for last_sync_at.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self.clock = clock

    async def get(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        local_id: str | None = None,
        remote_id: str | int | None = None,
        include_inactive: bool = False,
    ) -> EntityMapping | None:
        """Look up a mapping by local id or remote id.

        Args:
            session: Active session.
            entity_type: Entity type of the mapping.
            local_id: Local record id (exclusive with remote_id).
            remote_id: Remote record id (exclusive with local_id).
            include_inactive: Return deactivated mappings too.

        Returns:
            The mapping, or None.

        Raises:
            ValueError: If neither or both ids are given.
        """
        if (local_id is None) == (remote_id is None):
            raise ValueError("Provide exactly one of local_id or remote_id")
        stmt = select(EntityMapping).where(
            EntityMapping.entity_type == EntityType(entity_type).value
        )
        if local_id is not None:
            stmt = stmt.where(EntityMapping.local_id == local_id)
        else:
            stmt = stmt.where(EntityMapping.remote_id == str(remote_id))
        if not include_inactive:
            stmt = stmt.where(EntityMapping.active.is_(True))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_local(
        self, session: AsyncSession, entity_type: EntityType | str, local_id: str
    ) -> EntityMapping | None:
        return await self.get(session, entity_type, local_id=local_id)

    async def get_by_remote(
        self, session: AsyncSession, entity_type: EntityType | str, remote_id: str | int
    ) -> EntityMapping | None:
        return await self.get(session, entity_type, remote_id=remote_id)

    async def upsert(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        local_id: str,
        remote_id: str | int,
        direction: SyncDirection | str | None = None,
        metadata: dict[str, Any] | None = None,
        remote_modified_at: str | None = None,
        mark_synced: bool = True,
    ) -> str:
        """Create or refresh the mapping for a local record.

        Idempotent: repeated calls update metadata and last_sync_at on the
        single existing row and re-activate it if it was deactivated.
        A stale row pointing the same remote id at another local record is
        removed first so both unique constraints hold.

        Args:
            session: Active session; the caller commits.
            entity_type: Entity type of the mapping.
            local_id: Local record id.
            remote_id: Remote record id.
            direction: Sync direction. New rows default to ``both``; an
                existing row keeps its direction unless one is given.
            metadata: Provider-specific extras.
            remote_modified_at: Remote date_modified observed at this sync.
            mark_synced: When False, last_sync_at is left as it was (unset
                for new rows) so unpushed local edits still count as diverged.

        Returns:
            The mapping row id.
        """
        entity_value = EntityType(entity_type).value
        remote_key = str(remote_id)
        now = to_iso(self.clock())

        await session.execute(
            delete(EntityMapping).where(
                EntityMapping.entity_type == entity_value,
                EntityMapping.remote_id == remote_key,
                EntityMapping.local_id != local_id,
            )
        )

        values: dict[str, Any] = {
            "entity_type": entity_value,
            "local_id": local_id,
            "remote_id": remote_key,
            "sync_direction": SyncDirection(direction or SyncDirection.both).value,
            "active": True,
            "last_sync_at": now if mark_synced else None,
            "metadata_json": json.dumps(metadata) if metadata is not None else None,
            "created_at": now,
            "updated_at": now,
        }
        update_columns = ["remote_id", "active", "updated_at"]
        if direction is not None:
            update_columns.append("sync_direction")
        if mark_synced:
            update_columns.append("last_sync_at")
        if metadata is not None:
            update_columns.append("metadata_json")
        if remote_modified_at is not None:
            values["remote_modified_at"] = remote_modified_at
            update_columns.append("remote_modified_at")

        mapping_id = await upsert(
            session,
            EntityMapping.__table__,
            values,
            conflict_columns=["entity_type", "local_id"],
            update_columns=update_columns,
        )
        logger.debug(
            "Upserted %s mapping local=%s remote=%s", entity_value, local_id, remote_key
        )
        return mapping_id

    async def touch(self, session: AsyncSession, mapping_id: str) -> None:
        """Refresh last_sync_at after a successful push."""
        now = to_iso(self.clock())
        await session.execute(
            update(EntityMapping)
            .where(EntityMapping.id == mapping_id)
            .values(last_sync_at=now, updated_at=now)
        )

    async def deactivate(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        local_id: str | None = None,
        remote_id: str | int | None = None,
    ) -> int:
        """Deactivate the mapping for a deleted record.

        Returns:
            Number of rows deactivated (0 or 1).
        """
        if (local_id is None) == (remote_id is None):
            raise ValueError("Provide exactly one of local_id or remote_id")
        stmt = update(EntityMapping).where(
            EntityMapping.entity_type == EntityType(entity_type).value,
            EntityMapping.active.is_(True),
        )
        if local_id is not None:
            stmt = stmt.where(EntityMapping.local_id == local_id)
        else:
            stmt = stmt.where(EntityMapping.remote_id == str(remote_id))
        result = await session.execute(
            stmt.values(active=False, updated_at=to_iso(self.clock()))
        )
        return result.rowcount

    async def list_pushable(
        self,
        session: AsyncSession,
        entity_type: EntityType | str,
        limit: int,
        offset: int = 0,
    ) -> list[EntityMapping]:
        """Active mappings whose direction allows pushing, in stable order."""
        result = await session.execute(
            select(EntityMapping)
            .where(
                EntityMapping.entity_type == EntityType(entity_type).value,
                EntityMapping.active.is_(True),
                EntityMapping.sync_direction.in_(PUSHABLE_DIRECTIONS),
            )
            .order_by(EntityMapping.created_at, EntityMapping.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count(
        self, session: AsyncSession, entity_type: EntityType | str | None = None
    ) -> int:
        """Count active mappings, optionally for one entity type."""
        stmt = select(func.count()).select_from(EntityMapping).where(
            EntityMapping.active.is_(True)
        )
        if entity_type is not None:
            stmt = stmt.where(EntityMapping.entity_type == EntityType(entity_type).value)
        result = await session.execute(stmt)
        return int(result.scalar_one())
