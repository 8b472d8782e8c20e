"""Explicit-stack helpers shared by the parser and the flattener.

Nothing here recurses, so arbitrarily deep input cannot hit the interpreter's
recursion limit.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Generic, TypeVar

from app.models.tree_models import TreeNode

T = TypeVar("T")


class OpenFolderStack(Generic[T]):
    """Stack of currently-open folders keyed by indentation.

    An entry at equal or deeper indentation than the incoming line is a
    sibling or a closed subtree, not a parent, so it is popped.
    """

    def __init__(self) -> None:
        self._entries: list[tuple[int, T]] = []

    def parent_for(self, indent: int) -> T | None:
        while self._entries and self._entries[-1][0] >= indent:
            self._entries.pop()
        return self._entries[-1][1] if self._entries else None

    def push(self, indent: int, folder: T) -> None:
        self._entries.append((indent, folder))

    def __len__(self) -> int:
        return len(self._entries)


def walk_preorder(
    forest: list[TreeNode],
) -> Iterator[tuple[TreeNode, int, TreeNode | None]]:
    """Yield ``(node, depth, parent)`` in depth-first pre-order."""
    stack: list[tuple[TreeNode, int, TreeNode | None]] = [
        (node, 0, None) for node in reversed(forest)
    ]
    while stack:
        node, depth, parent = stack.pop()
        yield node, depth, parent
        for child in reversed(node.children):
            stack.append((child, depth + 1, node))


def count_nodes(forest: list[TreeNode]) -> int:
    return sum(1 for _ in walk_preorder(forest))


def max_depth(forest: list[TreeNode]) -> int:
    """Deepest structural depth in the forest, or -1 when it is empty."""
    return max((depth for _, depth, _ in walk_preorder(forest)), default=-1)
