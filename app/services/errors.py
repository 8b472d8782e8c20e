"""Error types raised by the parse/flatten/upload pipeline.

Parsing itself never raises on malformed lines; only whole-input
preconditions (size, encoding) and the persistence protocol fail.
"""

from __future__ import annotations


class DirtreeError(Exception):
    """Base class for all pipeline errors."""


class InputTooLarge(DirtreeError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(
            f"Input too large ({size:,} bytes). Maximum is {limit:,} bytes."
        )


class InvalidEncoding(DirtreeError):
    def __init__(self, tried: list[str]):
        self.tried = tried
        super().__init__(
            f"Unable to decode input with supported encodings: {', '.join(tried)}"
        )


class BatchWriteFailed(DirtreeError):
    """Phase one: a content batch could not be stored."""

    def __init__(self, batch_number: int, total_batches: int, attempts: int, project_id: str | None = None):
        self.batch_number = batch_number
        self.total_batches = total_batches
        self.attempts = attempts
        self.project_id = project_id
        super().__init__(
            f"Batch {batch_number}/{total_batches} failed after {attempts} attempts"
            + (f" (project {project_id})" if project_id else "")
        )


class LinkResolutionFailed(DirtreeError):
    """Phase two: parent links could not be written.

    Content rows from phase one are left in place; ``pending`` counts the
    items still carrying an unresolved parent reference.
    """

    def __init__(self, project_id: str, attempts: int, pending: int):
        self.project_id = project_id
        self.attempts = attempts
        self.pending = pending
        super().__init__(
            f"Parent links for project {project_id} failed after {attempts} attempts; "
            f"{pending} items remain unlinked"
        )


class InconsistentForest(DirtreeError):
    def __init__(self, order: int, parent_order: int | None, reason: str):
        self.order = order
        self.parent_order = parent_order
        self.reason = reason
        super().__init__(f"Item {order} (parent {parent_order}): {reason}")


class ProjectNotFound(DirtreeError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class UploadIncomplete(DirtreeError):
    """Phase two was requested before every phase-one batch arrived."""

    def __init__(self, project_id: str, missing: list[int]):
        self.project_id = project_id
        self.missing = missing
        super().__init__(
            f"Project {project_id} is still missing batches: "
            + ", ".join(str(n) for n in missing)
        )


class ContentMismatch(DirtreeError):
    """A continuation token was sent with a different forest than it was created for."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(
            f"Project {project_id} holds a different forest; "
            "start a new upload instead of resuming this one"
        )
