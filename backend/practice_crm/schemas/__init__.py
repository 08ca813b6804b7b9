"""Pydantic schemas."""

from .segment import (
    BooleanValue,
    Condition,
    ConditionSet,
    NumberValue,
    RangeValue,
    Segment,
    SegmentActiveRequest,
    SegmentCreate,
    SegmentListResponse,
    SegmentPatch,
    SegmentTagsResponse,
    StringSetValue,
    StringValue,
)

# audience resolution (campaign targeting)
from .audience import (
    AudienceIssue,
    AudiencePreviewRequest,
    AudiencePreviewResponse,
)
