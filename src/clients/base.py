"""Abstract base class for remote store clients.

The sync engine, webhook queue and batch handlers only talk to the
remote platform through this interface, so tests and alternative
platforms plug in without touching the services.
"""

from abc import ABC, abstractmethod
from typing import Any

from src.db.models import EntityType


class RemotePlatformClient(ABC):
    """Abstract base class for remote e-commerce platform clients.

    Concrete implementations must handle:
    - Authentication with the platform
    - Paginated listing per entity type
    - Single record retrieval and update
    - Bounded retry of transient failures
    """

    @property
    @abstractmethod
    def platform_name(self) -> str:
        """Return the platform identifier (e.g. 'woocommerce')."""
        ...

    @abstractmethod
    async def list_records(
        self, entity_type: EntityType, page: int, per_page: int
    ) -> list[dict[str, Any]]:
        """Fetch one page of a remote collection.

        Args:
            entity_type: Collection to page through.
            page: 1-based page number.
            per_page: Page size.

        Returns:
            Raw remote records; fewer than per_page means the last page.
        """
        ...

    @abstractmethod
    async def get_record(
        self, entity_type: EntityType, remote_id: str
    ) -> dict[str, Any] | None:
        """Fetch a single record, or None if the platform reports 404."""
        ...

    @abstractmethod
    async def update_record(
        self, entity_type: EntityType, remote_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Apply a partial update to a remote record and return it."""
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        """Return True if the platform accepts the configured credentials."""
        ...

    async def close(self) -> None:
        """Release transport resources. Default is a no-op."""
        return None
