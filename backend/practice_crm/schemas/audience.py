from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field, model_validator

from .segment import CamelModel, ConditionSet


# Either a stored segment or an ad-hoc condition set, never both
class AudiencePreviewRequest(CamelModel):
    segment_id: Optional[str] = None
    filter: Optional[ConditionSet] = None
    # Re-evaluate a stored segment before answering instead of trusting clientCount
    fresh: bool = True
    include_ids: bool = True

    @model_validator(mode="after")
    def _one_source(self) -> "AudiencePreviewRequest":
        if (self.segment_id is None) == (self.filter is None):
            raise ValueError("provide exactly one of segmentId or filter")
        return self


class AudienceIssue(CamelModel):
    record_id: Any = None
    field: str
    expected: str
    actual: str
    condition_id: Optional[str] = None


class AudiencePreviewResponse(CamelModel):
    total: int
    evaluated: int = 0
    segment_id: Optional[str] = None
    segment_name: Optional[str] = None
    # clientCount as cached on the segment; advisory
    cached_count: Optional[int] = None
    counted_at: Optional[datetime] = None
    client_ids: List[Any] = Field(default_factory=list)
    issues: List[AudienceIssue] = Field(default_factory=list)
