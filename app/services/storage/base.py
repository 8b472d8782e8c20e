"""Abstract base class for tree stores."""

from __future__ import annotations

from abc import ABC, abstractmethod

from app.models.tree_models import FlatItem, ParentLink, PersistedItem, ProjectRecord


class BaseTreeStore(ABC):
    """Storage collaborator for uploaded forests.

    Identities are assigned when content rows are inserted. Rows are keyed by
    ``(project_id, order)``, so re-inserting a batch is a no-op and an order
    can always be mapped back to its identity.
    """

    # True when identity assignment stays queryable by order under
    # concurrent inserts, so phase-one batches may be written in parallel.
    supports_parallel_writes: bool = False

    @abstractmethod
    async def create_project(self, name: str) -> ProjectRecord:
        """Create an empty project in the staging state."""

    @abstractmethod
    async def get_project(self, project_id: str) -> ProjectRecord | None:
        """Return the project or None."""

    @abstractmethod
    async def save_project(self, project: ProjectRecord) -> None:
        """Persist name, status, batch count and fingerprint of an existing project.

        ``received_batches`` is left untouched; only ``record_batch`` changes it.
        """

    @abstractmethod
    async def record_batch(
        self, project_id: str, batch_number: int, total_batches: int
    ) -> ProjectRecord:
        """Atomically add ``batch_number`` to the received set and return the project.

        Sets ``total_batches`` when the project has none yet. Concurrent calls
        for the same project must never lose each other's batch numbers.
        """

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and all of its items. Returns False if absent."""

    @abstractmethod
    async def insert_items(self, project_id: str, items: list[FlatItem]) -> None:
        """Store content rows. Rows whose order already exists are skipped."""

    @abstractmethod
    async def resolve_identities(self, project_id: str, orders: list[int]) -> dict[int, str]:
        """Map order values to stored identities. Unknown orders are omitted."""

    @abstractmethod
    async def write_parent_links(self, project_id: str, links: list[ParentLink]) -> None:
        """Set ``parent_id`` on the given items."""

    @abstractmethod
    async def list_items(self, project_id: str) -> list[PersistedItem]:
        """Return all items of a project ordered by ``order`` ascending."""

    async def close(self) -> None:
        """Release any held resources."""
