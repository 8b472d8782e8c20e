from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field


class EntryKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class Dialect(str, Enum):
    GLYPH = "glyph"
    SPACE = "space"


class RawLine(BaseModel):
    line_number: int
    text: str
    dialect: Dialect
    indent: int  # indentation level as measured, before normalisation
    name: str
    explicit_kind: EntryKind | None = None


class TreeNode(BaseModel):
    name: str
    kind: EntryKind
    depth: int
    children: list[TreeNode] = []


class FlatItem(BaseModel):
    name: str
    kind: EntryKind
    depth: int = Field(ge=0)
    order: int = Field(ge=0)
    parent_order: int | None = None


class UnresolvedParent(BaseModel):
    """A child whose parent is known only by its order, not its identity."""

    order: int
    parent_order: int


class ParentLink(BaseModel):
    item_id: str
    parent_id: str


class PersistedItem(FlatItem):
    id: str
    project_id: str
    parent_id: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def linked(self) -> bool:
        return self.parent_order is None or self.parent_id is not None


class ProjectStatus(str, Enum):
    STAGING = "staging"
    LINKED = "linked"
    LINK_FAILED = "link_failed"


class ProjectRecord(BaseModel):
    id: str
    name: str
    status: ProjectStatus = ProjectStatus.STAGING
    total_batches: int | None = None
    received_batches: list[int] = []
    fingerprint: str | None = None  # digest of the flattened items, set by whole uploads
    created_at: datetime
    updated_at: datetime

    def missing_batches(self) -> list[int]:
        if self.total_batches is None:
            return []
        received = set(self.received_batches)
        return [n for n in range(1, self.total_batches + 1) if n not in received]

    def all_batches_received(self) -> bool:
        return self.total_batches is not None and not self.missing_batches()


class ItemBatch(BaseModel):
    batch_number: int = Field(ge=1)
    total_batches: int = Field(ge=1)
    is_last_batch: bool
    items: list[FlatItem]


# --- API payloads ---


class TextRequest(BaseModel):
    text: str


class ParseResponse(BaseModel):
    dialect: Dialect
    forest: list[TreeNode] | None  # None when deeper than max_forest_depth
    forest_omitted: bool = False
    items: list[FlatItem]
    total_items: int
    source_filename: str | None = None


class TextUploadRequest(BaseModel):
    name: str = Field(min_length=1)
    text: str
    project_id: str | None = None  # continuation token


class BatchUploadRequest(BaseModel):
    name: str | None = None
    project_id: str | None = None
    batch_number: int = Field(ge=1)
    total_batches: int = Field(ge=1)
    is_last_batch: bool
    items: list[FlatItem]


class UploadResponse(BaseModel):
    project: ProjectRecord
    items: list[PersistedItem] | None = None  # only once the forest is fully linked
    missing_batches: list[int] = []


class ProjectResponse(BaseModel):
    project: ProjectRecord
    items: list[PersistedItem]


class TreeResponse(BaseModel):
    project: ProjectRecord
    forest: list[TreeNode] | None
    forest_omitted: bool = False
    items: list[PersistedItem] = []  # only filled when the forest is omitted
    unlinked: int
