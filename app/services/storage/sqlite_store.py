"""SQLite-backed tree store.

sqlite3 calls are blocking, so every operation runs in a worker thread
behind a single lock on the shared connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from app.models.tree_models import (
    EntryKind,
    FlatItem,
    ParentLink,
    PersistedItem,
    ProjectRecord,
    ProjectStatus,
)
from app.services.storage.base import BaseTreeStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    total_batches INTEGER,
    received_batches TEXT NOT NULL DEFAULT '[]',
    fingerprint TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS directory_items (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    parent_id TEXT,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    depth INTEGER NOT NULL,
    item_order INTEGER NOT NULL,
    parent_order INTEGER,
    UNIQUE (project_id, item_order)
);
CREATE INDEX IF NOT EXISTS idx_directory_items_parent ON directory_items (project_id, parent_id);
"""

_ITEM_COLUMNS = "id, project_id, parent_id, name, kind, depth, item_order, parent_order"

# Stay well below SQLite's bound-parameter limit.
_IN_CHUNK = 500


def _project_from_row(row: sqlite3.Row) -> ProjectRecord:
    return ProjectRecord(
        id=row["id"],
        name=row["name"],
        status=ProjectStatus(row["status"]),
        total_batches=row["total_batches"],
        received_batches=json.loads(row["received_batches"]),
        fingerprint=row["fingerprint"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _item_from_row(row: sqlite3.Row) -> PersistedItem:
    return PersistedItem(
        id=row["id"],
        project_id=row["project_id"],
        parent_id=row["parent_id"],
        name=row["name"],
        kind=EntryKind(row["kind"]),
        depth=row["depth"],
        order=row["item_order"],
        parent_order=row["parent_order"],
    )


class SqliteTreeStore(BaseTreeStore):
    # Rows are addressed by (project_id, item_order), never by insert sequence.
    supports_parallel_writes = True

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)
        logger.info("Opened SQLite tree store at %s", path)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            return fn(*args)

    # --- projects ---

    async def create_project(self, name: str) -> ProjectRecord:
        now = datetime.now(timezone.utc)
        project = ProjectRecord(id=uuid.uuid4().hex, name=name, created_at=now, updated_at=now)

        def _insert() -> None:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO projects (id, name, status, total_batches, received_batches, "
                    "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        project.id,
                        project.name,
                        project.status.value,
                        project.total_batches,
                        json.dumps(project.received_batches),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )

        await self._run(_insert)
        return project

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        def _select() -> ProjectRecord | None:
            row = self._conn.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
            return _project_from_row(row) if row else None

        return await self._run(_select)

    async def save_project(self, project: ProjectRecord) -> None:
        def _update() -> None:
            with self._conn:
                cur = self._conn.execute(
                    "UPDATE projects SET name = ?, status = ?, total_batches = ?, "
                    "fingerprint = ?, updated_at = ? WHERE id = ?",
                    (
                        project.name,
                        project.status.value,
                        project.total_batches,
                        project.fingerprint,
                        datetime.now(timezone.utc).isoformat(),
                        project.id,
                    ),
                )
            if cur.rowcount == 0:
                raise KeyError(project.id)

        await self._run(_update)

    async def record_batch(
        self, project_id: str, batch_number: int, total_batches: int
    ) -> ProjectRecord:
        # Read and write happen in one locked call and one transaction.
        def _merge() -> ProjectRecord:
            with self._conn:
                row = self._conn.execute(
                    "SELECT * FROM projects WHERE id = ?", (project_id,)
                ).fetchone()
                if row is None:
                    raise KeyError(project_id)
                project = _project_from_row(row)
                received = sorted(set(project.received_batches) | {batch_number})
                total = project.total_batches or total_batches
                now = datetime.now(timezone.utc)
                self._conn.execute(
                    "UPDATE projects SET received_batches = ?, total_batches = ?, "
                    "updated_at = ? WHERE id = ?",
                    (json.dumps(received), total, now.isoformat(), project_id),
                )
            return project.model_copy(
                update={"received_batches": received, "total_batches": total, "updated_at": now}
            )

        return await self._run(_merge)

    async def delete_project(self, project_id: str) -> bool:
        def _delete() -> bool:
            with self._conn:
                self._conn.execute(
                    "DELETE FROM directory_items WHERE project_id = ?", (project_id,)
                )
                cur = self._conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return cur.rowcount > 0

        return await self._run(_delete)

    # --- items ---

    async def insert_items(self, project_id: str, items: list[FlatItem]) -> None:
        rows = [
            (
                uuid.uuid4().hex,
                project_id,
                item.name,
                item.kind.value,
                item.depth,
                item.order,
                item.parent_order,
            )
            for item in items
        ]

        def _insert() -> None:
            with self._conn:
                exists = self._conn.execute(
                    "SELECT 1 FROM projects WHERE id = ?", (project_id,)
                ).fetchone()
                if exists is None:
                    raise KeyError(project_id)
                self._conn.executemany(
                    "INSERT OR IGNORE INTO directory_items "
                    "(id, project_id, name, kind, depth, item_order, parent_order) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )

        await self._run(_insert)

    async def resolve_identities(self, project_id: str, orders: list[int]) -> dict[int, str]:
        def _select() -> dict[int, str]:
            resolved: dict[int, str] = {}
            unique = sorted(set(orders))
            for start in range(0, len(unique), _IN_CHUNK):
                chunk = unique[start:start + _IN_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                for row in self._conn.execute(
                    f"SELECT id, item_order FROM directory_items "
                    f"WHERE project_id = ? AND item_order IN ({placeholders})",
                    (project_id, *chunk),
                ):
                    resolved[row["item_order"]] = row["id"]
            return resolved

        return await self._run(_select)

    async def write_parent_links(self, project_id: str, links: list[ParentLink]) -> None:
        def _update() -> None:
            with self._conn:
                self._conn.executemany(
                    "UPDATE directory_items SET parent_id = ? WHERE id = ? AND project_id = ?",
                    [(link.parent_id, link.item_id, project_id) for link in links],
                )

        await self._run(_update)

    async def list_items(self, project_id: str) -> list[PersistedItem]:
        def _select() -> list[PersistedItem]:
            cur = self._conn.execute(
                f"SELECT {_ITEM_COLUMNS} FROM directory_items "
                "WHERE project_id = ? ORDER BY item_order ASC",
                (project_id,),
            )
            return [_item_from_row(row) for row in cur]

        return await self._run(_select)

    async def close(self) -> None:
        await self._run(self._conn.close)
        logger.info("Closed SQLite tree store at %s", self.path)
