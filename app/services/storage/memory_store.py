"""In-process tree store backed by dictionaries."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

from app.models.tree_models import FlatItem, ParentLink, PersistedItem, ProjectRecord
from app.services.storage.base import BaseTreeStore


class MemoryTreeStore(BaseTreeStore):
    supports_parallel_writes = True

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRecord] = {}
        self._items: dict[str, dict[int, PersistedItem]] = {}
        self._lock = asyncio.Lock()

    async def create_project(self, name: str) -> ProjectRecord:
        now = datetime.now(timezone.utc)
        project = ProjectRecord(id=uuid.uuid4().hex, name=name, created_at=now, updated_at=now)
        async with self._lock:
            self._projects[project.id] = project
            self._items[project.id] = {}
        return project.model_copy(deep=True)

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        project = self._projects.get(project_id)
        return project.model_copy(deep=True) if project else None

    async def save_project(self, project: ProjectRecord) -> None:
        async with self._lock:
            stored = self._projects.get(project.id)
            if stored is None:
                raise KeyError(project.id)
            self._projects[project.id] = project.model_copy(
                deep=True,
                update={
                    "received_batches": stored.received_batches,
                    "updated_at": datetime.now(timezone.utc),
                },
            )

    async def record_batch(
        self, project_id: str, batch_number: int, total_batches: int
    ) -> ProjectRecord:
        async with self._lock:
            stored = self._projects.get(project_id)
            if stored is None:
                raise KeyError(project_id)
            received = sorted(set(stored.received_batches) | {batch_number})
            updated = stored.model_copy(
                update={
                    "received_batches": received,
                    "total_batches": stored.total_batches or total_batches,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._projects[project_id] = updated
            return updated.model_copy(deep=True)

    async def delete_project(self, project_id: str) -> bool:
        async with self._lock:
            self._items.pop(project_id, None)
            return self._projects.pop(project_id, None) is not None

    async def insert_items(self, project_id: str, items: list[FlatItem]) -> None:
        async with self._lock:
            rows = self._items.get(project_id)
            if rows is None:
                raise KeyError(project_id)
            for item in items:
                if item.order in rows:
                    continue
                rows[item.order] = PersistedItem(
                    **item.model_dump(),
                    id=uuid.uuid4().hex,
                    project_id=project_id,
                )

    async def resolve_identities(self, project_id: str, orders: list[int]) -> dict[int, str]:
        rows = self._items.get(project_id, {})
        return {order: rows[order].id for order in orders if order in rows}

    async def write_parent_links(self, project_id: str, links: list[ParentLink]) -> None:
        async with self._lock:
            rows = self._items.get(project_id, {})
            by_id = {row.id: row for row in rows.values()}
            for link in links:
                row = by_id.get(link.item_id)
                if row is None:
                    raise KeyError(link.item_id)
                row.parent_id = link.parent_id

    async def list_items(self, project_id: str) -> list[PersistedItem]:
        rows = self._items.get(project_id, {})
        return [rows[order].model_copy() for order in sorted(rows)]
