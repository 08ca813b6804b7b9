import threading
from unittest import mock

import pytest

from practice_crm.core.exceptions import (
    SegmentNotFoundError,
    SegmentPermissionError,
    SegmentRemovedError,
    SegmentValidationError,
)
from practice_crm.services.segment_registry import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_RECOUNTED,
    EVENT_UPDATED,
    SYSTEM_SEGMENTS,
    SegmentRegistry,
    seed_system_segments,
)
from practice_crm.services.segment_store import SegmentStore

from conftest import ACTIVE_FILTER, CLIENTS


def make(registry, name="Active recent", **kwargs):
    kwargs.setdefault("filter", ACTIVE_FILTER)
    return registry.create(name=name, **kwargs)


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------
def test_create_counts_eagerly(registry):
    seg = make(registry, description="seen lately", tags=["retention", "retention "])
    assert seg.id.startswith("seg-")
    assert seg.client_count == 2
    assert seg.counted_at == seg.created_at == seg.updated_at
    assert seg.tags == ["retention"]
    assert seg.is_active and not seg.is_system
    assert registry.get(seg.id) == seg


def test_create_validates_before_adding(registry):
    bad_filter = {"conditions": [{"field": "status", "operator": "greaterThan", "value": 3}]}
    with pytest.raises(SegmentValidationError):
        make(registry, filter=bad_filter)
    with pytest.raises(SegmentValidationError):
        make(registry, name="   ")
    with pytest.raises(SegmentValidationError):
        make(registry, filter={"matchType": "all", "conditions": []})
    with pytest.raises(SegmentValidationError):
        registry.create(name="No filter")
    assert len(registry) == 0


def test_validation_error_lists_each_problem(registry):
    bad_filter = {"conditions": [{"field": "nope", "operator": "equals", "value": "x"}]}
    with pytest.raises(SegmentValidationError) as exc:
        make(registry, filter=bad_filter)
    assert "Unknown segment field: nope" in exc.value.message
    assert exc.value.errors


def test_ids_are_unique(registry):
    ids = {make(registry, name=f"s{i}").id for i in range(20)}
    assert len(ids) == 20


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------
def test_update_bumps_updated_at_only_on_change(registry):
    seg = make(registry)
    same = registry.update(seg.id, {"name": seg.name})
    assert same.updated_at == seg.updated_at

    renamed = registry.update(seg.id, {"name": "Renamed", "tags": ["x"]})
    assert renamed.name == "Renamed"
    assert renamed.tags == ["x"]
    assert renamed.updated_at > seg.updated_at
    assert renamed.created_at == seg.created_at
    # name change alone does not recount
    assert renamed.counted_at == seg.counted_at


def test_update_filter_recounts(registry):
    seg = make(registry)
    wider = {"matchType": "any", "conditions": ACTIVE_FILTER["conditions"]}
    updated = registry.update(seg.id, {"filter": wider})
    assert updated.filter.match_type == "any"
    assert updated.client_count == 4
    assert updated.counted_at > seg.counted_at


def test_update_rejects_invalid_patch_without_changes(registry):
    seg = make(registry)
    with pytest.raises(SegmentValidationError):
        registry.update(seg.id, {"filter": {"conditions": [{"field": "lastSession", "operator": "lessThan", "value": "x"}]}})
    assert registry.get(seg.id) == seg


def test_update_unknown_segment(registry):
    with pytest.raises(SegmentNotFoundError):
        registry.update("seg-missing", {"name": "x"})


# ---------------------------------------------------------------------------
# system segments
# ---------------------------------------------------------------------------
def test_system_segments_are_read_only(registry):
    seeded = seed_system_segments(registry)
    assert [s.id for s in seeded] == [s["segment_id"] for s in SYSTEM_SEGMENTS]
    system_id = seeded[0].id
    before = registry.get(system_id)

    with pytest.raises(SegmentPermissionError):
        registry.update(system_id, {"name": "Mine now"})
    with pytest.raises(SegmentPermissionError):
        registry.delete(system_id)
    with pytest.raises(SegmentPermissionError):
        registry.set_active(system_id, False)

    assert registry.get(system_id) == before


def test_seeding_twice_keeps_existing_segments(registry):
    first = seed_system_segments(registry)
    second = seed_system_segments(registry)
    assert len(registry) == len(SYSTEM_SEGMENTS)
    assert first == second


# ---------------------------------------------------------------------------
# duplicate
# ---------------------------------------------------------------------------
def test_duplicate_creates_an_independent_copy(registry):
    source = make(registry, tags=["a"])
    copy = registry.duplicate(source.id)

    assert copy.id != source.id
    assert copy.name == "Active recent (Copy)"
    assert copy.client_count == source.client_count
    assert copy.counted_at is None
    assert copy.count_is_estimate
    assert copy.filter == source.filter

    registry.update(copy.id, {"tags": ["b"], "filter": {"conditions": [{"field": "status", "operator": "equals", "value": "inactive"}]}})
    unchanged = registry.get(source.id)
    assert unchanged.tags == ["a"]
    assert unchanged.filter == source.filter


def test_duplicate_of_system_segment_is_editable(registry):
    seed_system_segments(registry)
    copy = registry.duplicate("seg-system-active")
    assert not copy.is_system
    edited = registry.update(copy.id, {"name": "My actives"})
    assert edited.name == "My actives"


# ---------------------------------------------------------------------------
# delete / activate
# ---------------------------------------------------------------------------
def test_delete_leaves_a_removed_marker(registry):
    seg = make(registry)
    registry.delete(seg.id)
    assert seg.id not in registry
    assert registry.is_removed(seg.id)
    with pytest.raises(SegmentRemovedError):
        registry.get(seg.id)
    with pytest.raises(SegmentRemovedError):
        registry.delete(seg.id)
    with pytest.raises(SegmentNotFoundError) as exc:
        registry.get("seg-never-existed")
    assert not isinstance(exc.value, SegmentRemovedError)


def test_set_active_toggles_without_touching_updated_at(registry):
    seg = make(registry)
    off = registry.set_active(seg.id, False)
    assert not off.is_active
    assert off.updated_at == seg.updated_at
    assert registry.set_active(seg.id, True).is_active


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------
def test_list_by_filter(registry):
    a = make(registry, name="Anxiety follow-up", description="check in", tags=["clinical"])
    b = make(registry, name="VIP", description="high value ANXIETY cases", tags=["billing"])
    make(registry, name="Other", tags=["billing"])
    registry.set_active(b.id, False)

    assert {s.id for s in registry.list_by_filter(search="anxiety")} == {a.id, b.id}
    assert [s.name for s in registry.list_by_filter(tag="clinical")] == ["Anxiety follow-up"]
    assert {s.name for s in registry.list_by_filter(tag="billing", active_only=True)} == {"Other"}
    assert len(registry.list_by_filter()) == 3


def test_all_tags_sorted_and_unique(registry):
    make(registry, name="one", tags=["zeta", "alpha"])
    make(registry, name="two", tags=["alpha", "mid"])
    assert registry.all_tags() == ["alpha", "mid", "zeta"]


def test_returned_segments_are_copies(registry):
    seg = make(registry, tags=["a"])
    seg.tags.append("b")
    listed = registry.list()[0]
    listed.filter.conditions.clear()
    stored = registry.get(seg.id)
    assert stored.tags == ["a"]
    assert len(stored.filter.conditions) == 2


# ---------------------------------------------------------------------------
# recount
# ---------------------------------------------------------------------------
def test_recount_follows_population_changes(registry, population):
    seg = make(registry)
    population.add({"id": 5, "status": "active", "lastSession": 3})
    recounted = registry.recount(seg.id)
    assert recounted.client_count == 3
    assert recounted.counted_at > seg.counted_at
    # recount is not an edit
    assert recounted.updated_at == seg.updated_at


def test_evaluate_segment_returns_members(registry):
    seg = make(registry)
    _, result = registry.evaluate_segment(seg.id)
    assert result.matched_ids == [1, 3]
    assert result.evaluated == len(CLIENTS)


def test_recount_all_skips_nothing(registry, population):
    make(registry, name="a")
    make(registry, name="b")
    population.replace([])
    assert [s.client_count for s in registry.recount_all()] == [0, 0]


def test_evaluate_filter_stores_nothing(registry):
    result = registry.evaluate_filter({"conditions": [{"field": "diagnoses", "operator": "contains", "value": "ptsd"}]})
    assert result.matched_ids == [1, 2]
    assert len(registry) == 0


# ---------------------------------------------------------------------------
# change notifications
# ---------------------------------------------------------------------------
def test_subscribers_see_committed_changes(registry):
    events = []
    unsubscribe = registry.subscribe(events.append)
    seg = make(registry)
    registry.update(seg.id, {"name": "Renamed"})
    registry.delete(seg.id)
    unsubscribe()
    make(registry, name="after unsubscribe")

    assert [e.kind for e in events] == [EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED]
    assert events[1].segment.name == "Renamed"
    assert events[2].segment is None and events[2].segment_id == seg.id


def test_failing_subscriber_does_not_undo_the_change(registry):
    def broken(event):
        raise RuntimeError("listener down")

    registry.subscribe(broken)
    seg = make(registry)
    assert seg.id in registry


# ---------------------------------------------------------------------------
# persistence
# ---------------------------------------------------------------------------
def test_registry_state_survives_restart(tmp_path, population, clock):
    store = SegmentStore(tmp_path / "segments.json")
    first = SegmentRegistry(population, store=store, clock=clock)
    kept = make(first, tags=["keep"])
    gone = make(first, name="temporary")
    first.delete(gone.id)

    second = SegmentRegistry(population, store=SegmentStore(tmp_path / "segments.json"), clock=clock)
    assert second.get(kept.id) == kept
    with pytest.raises(SegmentRemovedError):
        second.get(gone.id)


def test_failed_save_leaves_registry_untouched(population, clock):
    store = mock.Mock(spec=SegmentStore)
    store.load.return_value = ([], [])
    registry = SegmentRegistry(population, store=store, clock=clock)

    store.save.side_effect = OSError("disk full")
    with pytest.raises(OSError):
        make(registry)
    assert len(registry) == 0


def test_listener_may_recount_the_segment_it_was_told_about(registry):
    seg = make(registry)
    seen = []

    def rerun(event):
        if event.kind == EVENT_RECOUNTED and not seen:
            seen.append(event.segment_id)
            registry.evaluate_segment(event.segment_id)

    registry.subscribe(rerun)
    worker = threading.Thread(target=registry.recount, args=(seg.id,))
    worker.start()
    worker.join(3)

    assert not worker.is_alive()
    assert seen == [seg.id]


def test_coalesced_recount_emits_one_event(registry):
    seg = make(registry)
    events = []
    registry.subscribe(lambda e: events.append(e.kind) if e.kind == EVENT_RECOUNTED else None)
    registry.recount(seg.id)
    assert events == [EVENT_RECOUNTED]


def test_single_string_tags_are_rejected(registry):
    with pytest.raises(SegmentValidationError, match="list of strings"):
        make(registry, tags="vip")
    assert len(registry) == 0


def test_null_description_in_patch_clears_it(registry):
    seg = make(registry, description="old")
    cleared = registry.update(seg.id, {"description": None})
    assert cleared.description == ""
    assert cleared.updated_at > seg.updated_at


@pytest.mark.parametrize("field", ["name", "tags", "filter"])
def test_null_for_required_parts_is_rejected(registry, field):
    seg = make(registry)
    with pytest.raises(SegmentValidationError, match="cannot be null"):
        registry.update(seg.id, {field: None})
    assert registry.get(seg.id) == seg
