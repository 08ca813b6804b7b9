from __future__ import annotations

from ..core.exceptions import SegmentValidationError
from ..core.logging_config import get_logger
from ..schemas.audience import AudienceIssue, AudiencePreviewRequest, AudiencePreviewResponse
from .segment_evaluator import EvaluationResult
from .segment_registry import SegmentRegistry

logger = get_logger(__name__)


def _issues(result: EvaluationResult) -> list[AudienceIssue]:
    return [
        AudienceIssue(
            record_id=i.record_id,
            field=i.field,
            expected=i.expected,
            actual=i.actual,
            condition_id=i.condition_id,
        )
        for i in result.issues
    ]


def audience_preview(registry: SegmentRegistry, req: AudiencePreviewRequest) -> AudiencePreviewResponse:
    """
    Resolve a campaign audience.

    For a stored segment the cached clientCount is only advisory: with
    fresh=True (default) the segment is re-evaluated first, otherwise the
    cached count is returned without member ids. Inactive segments cannot be
    targeted; a deleted segment id raises SegmentRemovedError.
    """
    if req.filter is not None:
        result = registry.evaluate_filter(req.filter)
        return AudiencePreviewResponse(
            total=result.matched,
            evaluated=result.evaluated,
            client_ids=list(result.matched_ids) if req.include_ids else [],
            issues=_issues(result),
        )

    segment = registry.get(req.segment_id)
    if not segment.is_active:
        raise SegmentValidationError(f"Segment {segment.id} is inactive and cannot be targeted")

    if not req.fresh:
        return AudiencePreviewResponse(
            total=segment.client_count,
            segment_id=segment.id,
            segment_name=segment.name,
            cached_count=segment.client_count,
            counted_at=segment.counted_at,
        )

    cached = segment.client_count
    segment, result = registry.evaluate_segment(segment.id)
    if cached != result.matched:
        logger.info(
            f"Audience for segment {segment.id} drifted: cached={cached} fresh={result.matched}"
        )
    return AudiencePreviewResponse(
        total=result.matched,
        evaluated=result.evaluated,
        segment_id=segment.id,
        segment_name=segment.name,
        cached_count=cached,
        counted_at=segment.counted_at,
        client_ids=list(result.matched_ids) if req.include_ids else [],
        issues=_issues(result),
    )
