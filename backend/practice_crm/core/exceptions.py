from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class SegmentError(Exception):
    """Base class for segment registry and rule errors."""

    code = "segment_error"

    def __init__(self, message: str, segment_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.segment_id = segment_id


class SegmentNotFoundError(SegmentError):
    code = "not_found"

    def __init__(self, segment_id: str):
        super().__init__(f"Segment not found: {segment_id}", segment_id)


class SegmentRemovedError(SegmentNotFoundError):
    """The id belonged to a segment that has since been deleted.

    Campaigns still pointing at it should show "segment removed" rather than
    treating the audience as empty.
    """

    code = "segment_removed"

    def __init__(self, segment_id: str):
        super().__init__(segment_id)
        self.message = f"Segment has been removed: {segment_id}"
        self.args = (self.message,)


class SegmentPermissionError(SegmentError):
    code = "permission_denied"

    def __init__(self, segment_id: str, action: str):
        super().__init__(f"System segment {segment_id} cannot be {action}", segment_id)
        self.action = action


class SegmentValidationError(SegmentError, ValueError):
    # ValueError so pydantic validators can raise it and report it as a field error
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[list[dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    @classmethod
    def from_errors(cls, errors: list[dict[str, Any]], default_loc: str = "filter") -> "SegmentValidationError":
        """Build one error from pydantic error dicts; keeps only loc, msg and type so the list stays JSON-safe."""
        cleaned = [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in errors
        ]
        summary = "; ".join(f"{'.'.join(err['loc']) or default_loc}: {err['msg']}" for err in cleaned)
        return cls(summary or "invalid request", errors=cleaned)


@dataclass(frozen=True)
class TypeMismatch:
    """A record value whose runtime type disagrees with its field descriptor.

    Collected during evaluation instead of raised so one malformed client
    record cannot abort a whole recount.
    """

    record_id: Any
    field: str
    expected: str
    actual: str
    condition_id: Optional[str] = None

    def describe(self) -> str:
        return (
            f"record={self.record_id} field={self.field} "
            f"expected={self.expected} actual={self.actual}"
        )
