"""Render a forest back to text in either dialect.

Folders always carry a trailing slash so a re-parse keeps their kind even
when the name contains a dot. Pass ``icons=True`` to also prefix 📁/📄,
which preserves extensionless file names as files.
"""

from __future__ import annotations

from app.models.tree_models import EntryKind, TreeNode
from app.services.tree_walk import walk_preorder

BRANCH = "├── "
LAST_BRANCH = "└── "
PIPE = "│   "
SPACE = "    "


def _label(node: TreeNode, icons: bool) -> str:
    label = node.name
    if node.kind == EntryKind.FOLDER and not label.endswith(("/", "\\")):
        label += "/"
    if icons:
        label = ("📁 " if node.kind == EntryKind.FOLDER else "📄 ") + label
    return label


def render_glyph(forest: list[TreeNode], *, icons: bool = False) -> str:
    """``tree``-style output: each root on its own line, descendants below it."""
    lines: list[str] = []
    for root in forest:
        lines.append(_label(root, icons))
        n = len(root.children)
        stack = [(root.children[i], "", i == n - 1) for i in range(n - 1, -1, -1)]
        while stack:
            node, prefix, is_last = stack.pop()
            lines.append(prefix + (LAST_BRANCH if is_last else BRANCH) + _label(node, icons))
            child_prefix = prefix + (SPACE if is_last else PIPE)
            n = len(node.children)
            for i in range(n - 1, -1, -1):
                stack.append((node.children[i], child_prefix, i == n - 1))
    return "\n".join(lines)


def render_indented(
    forest: list[TreeNode], indent_width: int = 2, *, icons: bool = False
) -> str:
    return "\n".join(
        " " * (depth * indent_width) + _label(node, icons)
        for node, depth, _ in walk_preorder(forest)
    )
