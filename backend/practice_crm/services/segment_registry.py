"""
Segment Registry: the single owner of segment identity and mutation.

- create / update / duplicate / delete / set_active / list_by_filter
- clientCount is recomputed eagerly on create and whenever a filter changes,
  and on demand through recount()
- mutations of one segment are serialized with a per-id lock; recounts of the
  same segment running at the same time are coalesced
- system segments are read-only: edit, delete and deactivate raise a
  permission error and leave the segment untouched
- callers get copies; nothing outside the registry can mutate stored state
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..core.concurrency import KeyedLock, SingleFlight
from ..core.exceptions import (
    SegmentNotFoundError,
    SegmentPermissionError,
    SegmentRemovedError,
    SegmentValidationError,
)
from ..core.logging_config import get_logger
from ..schemas.segment import ConditionSet, Segment, SegmentPatch, normalize_name, normalize_tags
from .client_population import ClientPopulation
from .segment_evaluator import EvaluationResult, RuleEvaluator
from .segment_store import SegmentStore

logger = get_logger(__name__)

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DUPLICATED = "duplicated"
EVENT_DELETED = "deleted"
EVENT_ACTIVATED = "activated"
EVENT_DEACTIVATED = "deactivated"
EVENT_RECOUNTED = "recounted"


@dataclass(frozen=True)
class SegmentEvent:
    kind: str
    segment_id: str
    # Copy of the segment after the change; None for deletions
    segment: Optional[Segment] = None


Listener = Callable[[SegmentEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validation_error(e: ValidationError) -> SegmentValidationError:
    return SegmentValidationError.from_errors(
        e.errors(include_url=False, include_context=False, include_input=False)
    )


class SegmentRegistry:
    def __init__(
        self,
        population: ClientPopulation,
        evaluator: Optional[RuleEvaluator] = None,
        store: Optional[SegmentStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.population = population
        self.evaluator = evaluator or RuleEvaluator()
        self._store = store
        self._clock = clock

        self._mu = threading.RLock()
        self._locks = KeyedLock()
        self._recounts = SingleFlight()
        self._segments: Dict[str, Segment] = {}
        self._removed: Set[str] = set()
        self._listeners: List[Listener] = []

        if store is not None:
            segments, removed = store.load(self.evaluator.fields)
            self._segments = {s.id: s for s in segments}
            self._removed = set(removed)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get(self, segment_id: str) -> Segment:
        with self._mu:
            return self._require(segment_id).model_copy(deep=True)

    def list(self) -> List[Segment]:
        with self._mu:
            return [s.model_copy(deep=True) for s in self._segments.values()]

    def list_by_filter(
        self,
        search: Optional[str] = None,
        tag: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Segment]:
        needle = search.strip().lower() if search else ""
        out = []
        for segment in self.list():
            if needle and needle not in segment.name.lower() and needle not in segment.description.lower():
                continue
            if tag and tag not in segment.tags:
                continue
            if active_only and not segment.is_active:
                continue
            out.append(segment)
        return out

    def all_tags(self) -> List[str]:
        with self._mu:
            return sorted({t for s in self._segments.values() for t in s.tags})

    def is_removed(self, segment_id: str) -> bool:
        with self._mu:
            return segment_id in self._removed

    def __len__(self) -> int:
        with self._mu:
            return len(self._segments)

    def __contains__(self, segment_id: object) -> bool:
        with self._mu:
            return segment_id in self._segments

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        description: str = "",
        tags: Optional[Iterable[str]] = None,
        filter: Union[ConditionSet, Dict[str, Any], None] = None,
    ) -> Segment:
        segment = self._new_segment(name, description, tags, filter, is_system=False)
        with self._locks.hold(segment.id):
            self._commit(segment.id, segment)
        logger.info(
            f"Segment created: id={segment.id} name={segment.name!r} clients={segment.client_count}"
        )
        self._emit(EVENT_CREATED, segment)
        return segment.model_copy(deep=True)

    def add_system_segment(
        self,
        name: str,
        description: str = "",
        tags: Optional[Iterable[str]] = None,
        filter: Union[ConditionSet, Dict[str, Any], None] = None,
        segment_id: Optional[str] = None,
    ) -> Segment:
        """Register a read-only system segment; an existing id is kept as is."""
        if segment_id is not None:
            with self._mu:
                existing = self._segments.get(segment_id)
            if existing is not None:
                return existing.model_copy(deep=True)

        segment = self._new_segment(name, description, tags, filter, is_system=True, segment_id=segment_id)
        with self._locks.hold(segment.id):
            self._commit(segment.id, segment)
        logger.info(f"System segment registered: id={segment.id} name={segment.name!r}")
        self._emit(EVENT_CREATED, segment)
        return segment.model_copy(deep=True)

    def update(self, segment_id: str, patch: Union[SegmentPatch, Dict[str, Any]]) -> Segment:
        patch = self._validated_patch(patch)
        with self._locks.hold(segment_id):
            with self._mu:
                current = self._require(segment_id)
            if current.is_system:
                raise SegmentPermissionError(segment_id, "edited")

            changes = {k: v for k, v in patch.changes().items() if getattr(current, k) != v}
            if not changes:
                return current.model_copy(deep=True)

            if "filter" in changes:
                result = self._evaluate(changes["filter"])
                changes["client_count"] = result.matched
                changes["counted_at"] = self._clock()
            changes["updated_at"] = self._clock()

            updated = current.model_copy(update=changes, deep=True)
            self._commit(segment_id, updated)

        logger.info(f"Segment updated: id={segment_id} fields={sorted(k for k in changes if k != 'updated_at')}")
        self._emit(EVENT_UPDATED, updated)
        return updated.model_copy(deep=True)

    def duplicate(self, segment_id: str) -> Segment:
        """
        Copy a segment (system segments included) into a new, editable one.

        The copy starts with the source's clientCount as an estimate
        (countedAt is None) until its next recount.
        """
        with self._mu:
            source = self._require(segment_id).model_copy(deep=True)

        now = self._clock()
        copy = source.model_copy(
            update={
                "id": self._new_id(),
                "name": f"{source.name} (Copy)",
                "is_system": False,
                "counted_at": None,
                "created_at": now,
                "updated_at": now,
            },
            deep=True,
        )
        with self._locks.hold(copy.id):
            self._commit(copy.id, copy)
        logger.info(f"Segment duplicated: source={segment_id} copy={copy.id}")
        self._emit(EVENT_DUPLICATED, copy)
        return copy.model_copy(deep=True)

    def delete(self, segment_id: str) -> None:
        with self._locks.hold(segment_id):
            with self._mu:
                current = self._require(segment_id)
            if current.is_system:
                raise SegmentPermissionError(segment_id, "deleted")
            self._commit(segment_id, None)
        logger.info(f"Segment deleted: id={segment_id}")
        self._emit(EVENT_DELETED, None, segment_id=segment_id)

    def set_active(self, segment_id: str, is_active: bool) -> Segment:
        with self._locks.hold(segment_id):
            with self._mu:
                current = self._require(segment_id)
            if current.is_system and not is_active:
                raise SegmentPermissionError(segment_id, "deactivated")
            if current.is_active == is_active:
                return current.model_copy(deep=True)
            updated = current.model_copy(update={"is_active": is_active}, deep=True)
            self._commit(segment_id, updated)
        logger.info(f"Segment {'activated' if is_active else 'deactivated'}: id={segment_id}")
        self._emit(EVENT_ACTIVATED if is_active else EVENT_DEACTIVATED, updated)
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # recount
    # ------------------------------------------------------------------
    def recount(self, segment_id: str) -> Segment:
        segment, _ = self.evaluate_segment(segment_id)
        return segment

    def evaluate_segment(self, segment_id: str) -> Tuple[Segment, EvaluationResult]:
        """Fresh evaluation pass over the population; refreshes the cached clientCount."""
        ran = []

        def run() -> Tuple[Segment, EvaluationResult]:
            # only the caller that owns the in-flight call gets here
            ran.append(True)
            return self._recount_locked(segment_id)

        segment, result = self._recounts.do(segment_id, run)
        if ran:
            # emitted after the in-flight call is released, so listeners may recount again
            self._emit(EVENT_RECOUNTED, segment)
        return segment.model_copy(deep=True), result

    def recount_all(self) -> List[Segment]:
        with self._mu:
            ids = list(self._segments)
        out = []
        for segment_id in ids:
            try:
                out.append(self.recount(segment_id))
            except SegmentNotFoundError:
                # deleted while the batch was running
                continue
        return out

    def evaluate_filter(self, filter: Union[ConditionSet, Dict[str, Any]]) -> EvaluationResult:
        """Evaluate an ad-hoc condition set without storing anything."""
        return self._evaluate(self._condition_set(filter))

    # ------------------------------------------------------------------
    # change notifications
    # ------------------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._mu:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._mu:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _require(self, segment_id: str) -> Segment:
        segment = self._segments.get(segment_id)
        if segment is None:
            if segment_id in self._removed:
                raise SegmentRemovedError(segment_id)
            raise SegmentNotFoundError(segment_id)
        return segment

    def _new_id(self) -> str:
        with self._mu:
            while True:
                candidate = f"seg-{uuid.uuid4().hex[:12]}"
                if candidate not in self._segments and candidate not in self._removed:
                    return candidate

    def _new_segment(
        self,
        name: str,
        description: str,
        tags: Optional[Iterable[str]],
        filter: Union[ConditionSet, Dict[str, Any], None],
        is_system: bool,
        segment_id: Optional[str] = None,
    ) -> Segment:
        # Validate everything before touching registry state
        name = normalize_name(name)
        if isinstance(tags, str):
            raise SegmentValidationError("tags must be a list of strings, not a single string")
        tag_list = normalize_tags(list(tags or []))
        if filter is None:
            raise SegmentValidationError("a segment needs a filter")
        condition_set = self._condition_set(filter)

        result = self._evaluate(condition_set)
        now = self._clock()
        return Segment(
            id=segment_id or self._new_id(),
            name=name,
            description=description or "",
            tags=tag_list,
            filter=condition_set,
            is_system=is_system,
            is_active=True,
            client_count=result.matched,
            counted_at=now,
            created_at=now,
            updated_at=now,
        )

    def _condition_set(self, raw: Union[ConditionSet, Dict[str, Any]]) -> ConditionSet:
        if isinstance(raw, ConditionSet):
            return raw.model_copy(deep=True)
        try:
            return ConditionSet.model_validate(raw, context={"fields": self.evaluator.fields})
        except ValidationError as e:
            raise _validation_error(e) from None

    def _validated_patch(self, patch: Union[SegmentPatch, Dict[str, Any]]) -> SegmentPatch:
        if isinstance(patch, SegmentPatch):
            return patch.model_copy(deep=True)
        try:
            return SegmentPatch.model_validate(patch, context={"fields": self.evaluator.fields})
        except ValidationError as e:
            raise _validation_error(e) from None

    def _evaluate(self, condition_set: ConditionSet) -> EvaluationResult:
        return self.evaluator.count_matches(self.population.records(), condition_set)

    def _recount_locked(self, segment_id: str) -> Tuple[Segment, EvaluationResult]:
        with self._locks.hold(segment_id):
            with self._mu:
                current = self._require(segment_id)
            result = self._evaluate(current.filter)
            updated = current.model_copy(
                update={"client_count": result.matched, "counted_at": self._clock()},
                deep=True,
            )
            self._commit(segment_id, updated)
        if result.issues:
            logger.warning(
                f"Segment recount id={segment_id} skipped {len(result.issues)} malformed record values"
            )
        return updated, result

    def _commit(self, segment_id: str, segment: Optional[Segment]) -> None:
        """Swap in the new state; the snapshot is written first so a failed save changes nothing."""
        with self._mu:
            segments = dict(self._segments)
            removed = set(self._removed)
            if segment is None:
                segments.pop(segment_id, None)
                removed.add(segment_id)
            else:
                segments[segment_id] = segment
            if self._store is not None:
                self._store.save(list(segments.values()), list(removed))
            self._segments = segments
            self._removed = removed

    def _emit(self, kind: str, segment: Optional[Segment], segment_id: Optional[str] = None) -> None:
        with self._mu:
            listeners = list(self._listeners)
        event = SegmentEvent(
            kind=kind,
            segment_id=segment_id or segment.id,
            segment=segment.model_copy(deep=True) if segment is not None else None,
        )
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # the change is already committed; a broken subscriber must not undo it
                logger.exception(f"Segment listener failed for event={kind} id={event.segment_id}")


# Read-only segments every practice starts with
SYSTEM_SEGMENTS: List[Dict[str, Any]] = [
    {
        "segment_id": "seg-system-active",
        "name": "Active Clients",
        "description": "Clients with at least one session in the last 60 days",
        "tags": ["active", "current"],
        "filter": {
            "matchType": "all",
            "conditions": [
                {"id": "c1", "field": "lastSession", "operator": "lessThan", "value": 60},
                {"id": "c2", "field": "status", "operator": "equals", "value": "active"},
            ],
        },
    },
    {
        "segment_id": "seg-system-new",
        "name": "New Clients (30 days)",
        "description": "Clients who joined within the last 30 days",
        "tags": ["new", "onboarding"],
        "filter": {
            "matchType": "all",
            "conditions": [
                {"id": "c1", "field": "joinDate", "operator": "lessThan", "value": 30},
            ],
        },
    },
]


def seed_system_segments(registry: SegmentRegistry) -> List[Segment]:
    return [registry.add_system_segment(**entry) for entry in SYSTEM_SEGMENTS]
