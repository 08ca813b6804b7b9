import pytest

from practice_crm.core.exceptions import SegmentValidationError
from practice_crm.schemas.audience import AudiencePreviewRequest
from practice_crm.services.audience_service import audience_preview

from conftest import ACTIVE_FILTER


def _request(**kwargs):
    return AudiencePreviewRequest.model_validate(kwargs)


def test_fresh_preview_recounts_and_reports_drift(registry, population):
    seg = registry.create(name="Active", filter=ACTIVE_FILTER)
    population.add({"id": 5, "status": "active", "lastSession": 1})

    resp = audience_preview(registry, _request(segmentId=seg.id))
    assert resp.cached_count == 2
    assert resp.total == 3
    assert resp.client_ids == [1, 3, 5]
    assert registry.get(seg.id).client_count == 3


def test_cached_preview_skips_evaluation(registry, population):
    seg = registry.create(name="Active", filter=ACTIVE_FILTER)
    population.replace([])

    resp = audience_preview(registry, _request(segmentId=seg.id, fresh=False))
    assert resp.total == 2
    assert resp.client_ids == []
    assert resp.counted_at == seg.counted_at
    assert registry.get(seg.id).client_count == 2


def test_inactive_segment_cannot_be_targeted(registry):
    seg = registry.create(name="Active", filter=ACTIVE_FILTER)
    registry.set_active(seg.id, False)
    with pytest.raises(SegmentValidationError, match="inactive"):
        audience_preview(registry, _request(segmentId=seg.id))


def test_issues_are_reported(registry, population):
    population.add({"id": 6, "status": "active", "lastSession": "recently"})
    resp = audience_preview(registry, _request(filter=ACTIVE_FILTER))
    assert resp.total == 2
    assert [(i.record_id, i.field) for i in resp.issues] == [(6, "lastSession")]
