"""Parse exported directory listings into a forest of TreeNodes.

Two indentation dialects are recognised per line:

- glyph: ``tree``-style drawing characters (``├── name``, ``│   └── name``,
  ASCII ``|-- name`` / ``+---name``) and Windows ``tree /F`` rail rows
  (``│   file.txt``).
- space: plain leading whitespace, one level per ``indent_width`` columns.

Parsing never rejects a line. Anything that matches neither dialect gets
its leading whitespace as indent, which is zero in the worst case.
"""

from __future__ import annotations

import codecs
import logging
import re
from collections.abc import Callable

from app.config import Settings, get_settings
from app.models.tree_models import Dialect, EntryKind, RawLine, TreeNode
from app.services.errors import InputTooLarge, InvalidEncoding
from app.services.tree_walk import OpenFolderStack

logger = logging.getLogger(__name__)

KindClassifier = Callable[[str], EntryKind]

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")
_HTML_MARKERS = ("<!doctype", "<html")

# Rail run, then a branch marker with its dashes, then the name.
_BRANCH_RE = re.compile(
    r"^(?P<rail>[│|\s]*?)(?P<branch>[├└][─\-]+|[+\\`|][─\-]{2,})\s*(?P<name>.*)$"
)
# Windows ``tree /F`` lists files under a rail with no branch marker.
_RAIL_RE = re.compile(r"^(?P<rail>\s*[│|][│|\s]*)(?P<name>[^│|\s].*)$")
_LEADING_WS_RE = re.compile(r"^\s*")
_RAIL_ONLY_RE = re.compile(r"^[│|\s]+$")

# Banner and summary lines written by ``tree`` itself.
_NOISE_RES = [
    re.compile(r"^\d+ director(?:y|ies)(?:, \d+ files?)?$"),
    re.compile(r"^Folder PATH listing", re.IGNORECASE),
    re.compile(r"^Volume serial number is", re.IGNORECASE),
    re.compile(r"^卷 .* 的文件夹 PATH 列表$"),
    re.compile(r"^卷序列号为"),
]

_FOLDER_ICONS = ("📁", "📂")
_FILE_ICONS = ("📄",)


def check_input_size(size: int, settings: Settings | None = None) -> None:
    """Raise InputTooLarge when ``size`` bytes exceeds the configured limit."""
    settings = settings or get_settings()
    if size > settings.max_input_bytes:
        raise InputTooLarge(size, settings.max_input_bytes)


def decode_input(blob: bytes, settings: Settings | None = None) -> str:
    """Size-check and decode an uploaded listing.

    UTF-8 (with or without BOM) is the default. A UTF-16 BOM selects UTF-16,
    which is what PowerShell redirection produces. Configured fallback
    codecs are tried last.
    """
    settings = settings or get_settings()
    check_input_size(len(blob), settings)

    if blob.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        encodings = ["utf-16"]
    else:
        encodings = ["utf-8-sig"]
    encodings += [e for e in settings.fallback_encodings if e not in encodings]

    for encoding in encodings:
        try:
            return blob.decode(encoding)
        except UnicodeDecodeError:
            continue
        except LookupError:
            logger.warning("Unknown fallback encoding configured: %s", encoding)
            continue
    raise InvalidEncoding(encodings)


def infer_kind_from_dot(name: str) -> EntryKind:
    """Names containing a dot are files; everything else is a folder.

    This is a heuristic: dotted folder names and extensionless files are
    misclassified unless the input annotates them.
    """
    return EntryKind.FILE if "." in name else EntryKind.FOLDER


def clean_lines(text: str) -> list[str]:
    """Split text into content lines, dropping BOM, blanks, noise and HTML."""
    if text.startswith("\ufeff"):
        text = text[1:]
    lines: list[str] = []
    for line in _LINE_BREAK_RE.split(text):
        stripped = line.strip()
        if not stripped or _RAIL_ONLY_RE.match(stripped):
            continue
        lowered = stripped.lower()
        if any(marker in lowered for marker in _HTML_MARKERS):
            continue
        if any(pattern.match(stripped) for pattern in _NOISE_RES):
            continue
        lines.append(line.rstrip())
    return lines


def _columns(prefix: str, tab_width: int) -> int:
    return sum(tab_width if ch == "\t" else 1 for ch in prefix)


def _split_annotation(name: str) -> tuple[str, EntryKind | None]:
    """Strip explicit kind markers (icons, trailing slash) from a name."""
    kind: EntryKind | None = None
    for icon in _FOLDER_ICONS + _FILE_ICONS:
        if name.startswith(icon):
            kind = EntryKind.FOLDER if icon in _FOLDER_ICONS else EntryKind.FILE
            name = name[len(icon):].lstrip("\ufe0f").strip()
            break

    if len(name) > 1 and name.endswith(("/", "\\")):
        name = name.rstrip("/\\").strip() or name
        kind = EntryKind.FOLDER
    elif name in ("/", "\\"):
        kind = EntryKind.FOLDER
    return name, kind


def _is_glyph_line(line: str) -> bool:
    return bool(_BRANCH_RE.match(line) or _RAIL_RE.match(line))


def parse_lines(text: str, settings: Settings | None = None) -> list[RawLine]:
    """Classify every content line and measure its indentation level."""
    settings = settings or get_settings()
    lines = clean_lines(text)
    glyph_doc = any(_is_glyph_line(line) for line in lines)

    # ``tree`` prints the root on an unindented line above the first branch.
    header_offset = 0
    if glyph_doc and lines:
        first = lines[0]
        if not _is_glyph_line(first) and not first[:1].isspace():
            header_offset = 1

    space_unit = settings.glyph_width if glyph_doc else settings.indent_width
    raw_lines: list[RawLine] = []

    for number, line in enumerate(lines, start=1):
        branch = _BRANCH_RE.match(line)
        rail = None if branch else _RAIL_RE.match(line)
        if branch:
            dialect = Dialect.GLYPH
            column = _columns(branch.group("rail"), settings.glyph_width)
            indent = column // settings.glyph_width + header_offset
            name = branch.group("name")
        elif rail:
            dialect = Dialect.GLYPH
            column = _columns(rail.group("rail"), settings.glyph_width)
            indent = column // settings.glyph_width
            name = rail.group("name")
        else:
            dialect = Dialect.SPACE
            leading = _LEADING_WS_RE.match(line).group(0)
            indent = _columns(leading, space_unit) // space_unit
            name = line[len(leading):]

        name, explicit_kind = _split_annotation(name.strip())
        if not name:
            continue

        raw_lines.append(
            RawLine(
                line_number=number,
                text=line,
                dialect=dialect,
                indent=indent,
                name=name,
                explicit_kind=explicit_kind,
            )
        )

    return raw_lines


def build_forest(
    raw_lines: list[RawLine],
    classify: KindClassifier | None = None,
) -> list[TreeNode]:
    """Attach classified lines to their parents using the open-folder stack."""
    classify = classify or infer_kind_from_dot
    roots: list[TreeNode] = []
    stack: OpenFolderStack[TreeNode] = OpenFolderStack()

    prev: tuple[TreeNode, int, bool] | None = None  # (node, indent, kind was inferred)

    for raw in raw_lines:
        # A deeper line right after an inferred file means the "file" was a
        # folder with a dotted name.
        if prev is not None:
            prev_node, prev_indent, prev_inferred = prev
            if (
                raw.indent > prev_indent
                and prev_inferred
                and prev_node.kind == EntryKind.FILE
            ):
                logger.debug("Promoting %r to folder (has children)", prev_node.name)
                prev_node.kind = EntryKind.FOLDER
                stack.push(prev_indent, prev_node)

        parent = stack.parent_for(raw.indent)
        kind = raw.explicit_kind or classify(raw.name)
        node = TreeNode(
            name=raw.name,
            kind=kind,
            depth=parent.depth + 1 if parent is not None else 0,
        )

        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

        if kind == EntryKind.FOLDER:
            stack.push(raw.indent, node)

        prev = (node, raw.indent, raw.explicit_kind is None)

    return roots


def detect_dialect(raw_lines: list[RawLine]) -> Dialect:
    if any(line.dialect == Dialect.GLYPH for line in raw_lines):
        return Dialect.GLYPH
    return Dialect.SPACE


def parse_directory_text(
    text: str,
    *,
    settings: Settings | None = None,
    classify: KindClassifier | None = None,
) -> list[TreeNode]:
    """Parse a directory listing into a forest. Never raises on content."""
    return build_forest(parse_lines(text, settings), classify)


def parse_directory_bytes(
    blob: bytes,
    *,
    settings: Settings | None = None,
    classify: KindClassifier | None = None,
) -> list[TreeNode]:
    """Check size and encoding, then parse."""
    text = decode_input(blob, settings)
    return parse_directory_text(text, settings=settings, classify=classify)
