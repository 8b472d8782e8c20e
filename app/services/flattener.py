"""Flatten a parsed forest into order-indexed items with parent references.

Every function here is pure: the same forest always yields the same orders
and the same parent links, which is what makes a failed upload safe to
retry from scratch.
"""

from __future__ import annotations

import hashlib
import json
import math
from enum import Enum

from app.models.tree_models import (
    EntryKind,
    FlatItem,
    ItemBatch,
    PersistedItem,
    TreeNode,
)
from app.services.errors import InconsistentForest
from app.services.tree_walk import OpenFolderStack, walk_preorder


class LinkStrategy(str, Enum):
    SAME_PASS = "same_pass"
    POST_HOC = "post_hoc"


def flatten_forest(
    forest: list[TreeNode],
    strategy: LinkStrategy = LinkStrategy.SAME_PASS,
) -> list[FlatItem]:
    """Emit items in depth-first pre-order, numbering them from 0.

    SAME_PASS records each child's parent order during the walk. POST_HOC
    emits unlinked items and infers parents afterwards by scanning back.
    """
    items: list[FlatItem] = []
    order_of: dict[int, int] = {}  # id(node) -> order

    for node, depth, parent in walk_preorder(forest):
        order = len(items)
        order_of[id(node)] = order
        parent_order = None
        if strategy == LinkStrategy.SAME_PASS and parent is not None:
            parent_order = order_of[id(parent)]
        items.append(
            FlatItem(
                name=node.name,
                kind=node.kind,
                depth=depth,
                order=order,
                parent_order=parent_order,
            )
        )

    if strategy == LinkStrategy.POST_HOC:
        return infer_parent_orders(items)
    return items


def assign_parent_orders(items: list[FlatItem]) -> list[FlatItem]:
    """Link an already-flat list in one pass using the open-folder stack.

    The parent of each item is the nearest still-open folder with a smaller
    depth. Runs in O(n).
    """
    stack: OpenFolderStack[int] = OpenFolderStack()
    linked: list[FlatItem] = []
    for item in items:
        parent_order = stack.parent_for(item.depth)
        linked.append(item.model_copy(update={"parent_order": parent_order}))
        if item.kind == EntryKind.FOLDER:
            stack.push(item.depth, item.order)
    return linked


def infer_parent_orders(items: list[FlatItem]) -> list[FlatItem]:
    """Link by scanning back for the nearest earlier shallower folder.

    O(n^2) in the worst case. Kept for storage layers that hand back rows
    out of input order and must re-derive links after sorting by order.
    """
    ordered = sorted(items, key=lambda i: i.order)
    linked: list[FlatItem] = []
    for idx, item in enumerate(ordered):
        parent_order = None
        if item.depth > 0:
            for j in range(idx - 1, -1, -1):
                candidate = ordered[j]
                if candidate.depth < item.depth and candidate.kind == EntryKind.FOLDER:
                    parent_order = candidate.order
                    break
        linked.append(item.model_copy(update={"parent_order": parent_order}))
    return linked


def check_consistency(items: list[FlatItem]) -> None:
    """Raise InconsistentForest if any parent reference cannot be honoured."""
    seen: dict[int, FlatItem] = {}
    previous = -1
    for item in items:
        if item.order <= previous:
            raise InconsistentForest(
                item.order, item.parent_order, f"order does not increase after {previous}"
            )
        previous = item.order

        if item.parent_order is not None:
            parent = seen.get(item.parent_order)
            if parent is None:
                raise InconsistentForest(
                    item.order, item.parent_order, "parent order was not emitted earlier"
                )
            if parent.kind != EntryKind.FOLDER:
                raise InconsistentForest(
                    item.order, item.parent_order, "parent is not a folder"
                )
            if parent.depth >= item.depth:
                raise InconsistentForest(
                    item.order, item.parent_order, "parent is not shallower than child"
                )
        seen[item.order] = item


def rebuild_forest(items: list[FlatItem]) -> list[TreeNode]:
    """Rebuild the nested forest from ``parent_order`` links."""
    roots: list[TreeNode] = []
    nodes: dict[int, TreeNode] = {}
    for item in sorted(items, key=lambda i: i.order):
        node = TreeNode(name=item.name, kind=item.kind, depth=item.depth)
        nodes[item.order] = node
        if item.parent_order is None:
            roots.append(node)
            continue
        parent = nodes.get(item.parent_order)
        if parent is None:
            raise InconsistentForest(
                item.order, item.parent_order, "parent order was not emitted earlier"
            )
        parent.children.append(node)
    return roots


def rebuild_persisted_forest(items: list[PersistedItem]) -> list[TreeNode]:
    """Rebuild the forest from stored ``parent_id`` links.

    Items whose parent link has not been written yet come back as roots, so
    a partially linked project can still be displayed.
    """
    roots: list[TreeNode] = []
    nodes: dict[str, TreeNode] = {}
    for item in sorted(items, key=lambda i: i.order):
        node = TreeNode(name=item.name, kind=item.kind, depth=item.depth)
        nodes[item.id] = node
        if item.parent_id is None:
            roots.append(node)
            continue
        parent = nodes.get(item.parent_id)
        if parent is None:
            raise InconsistentForest(
                item.order, item.parent_order, f"parent id {item.parent_id} is unknown"
            )
        parent.children.append(node)
    return roots


def chunk_items(items: list[FlatItem], batch_size: int) -> list[ItemBatch]:
    """Split items into numbered batches of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    total = math.ceil(len(items) / batch_size)
    return [
        ItemBatch(
            batch_number=n + 1,
            total_batches=total,
            is_last_batch=n + 1 == total,
            items=items[n * batch_size:(n + 1) * batch_size],
        )
        for n in range(total)
    ]


def fingerprint_items(items: list[FlatItem]) -> str:
    """sha256 over every item's order, name, kind, depth and parent order."""
    digest = hashlib.sha256()
    for item in items:
        row = [item.order, item.name, item.kind.value, item.depth, item.parent_order]
        digest.update(json.dumps(row, ensure_ascii=False).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()
