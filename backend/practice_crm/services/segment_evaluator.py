"""
Rule evaluation: does a client record belong to a segment?

A ConditionSet is a list of typed conditions combined with ALL (AND) or
ANY (OR). Conditions are validated against the field table when they are
built, so evaluation only has to deal with the client data itself:

- a record that does not carry the field (or carries null) fails the condition
- a record whose value has the wrong runtime type fails the condition and a
  TypeMismatch is collected; the rest of the population is still evaluated
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Mapping, Optional

from ..core.exceptions import SegmentValidationError, TypeMismatch
from ..core.logging_config import get_logger
from ..schemas.segment import (
    BooleanValue,
    Condition,
    ConditionSet,
    NumberValue,
    RangeValue,
    StringSetValue,
    StringValue,
)
from .segment_fields import (
    CLIENT_FIELDS,
    CONTAINS,
    ENDS_WITH,
    EQUALS,
    GREATER_THAN,
    LESS_THAN,
    NOT_CONTAINS,
    NOT_EQUALS,
    STARTS_WITH,
    FieldDescriptor,
    FieldRegistry,
)

logger = get_logger(__name__)

RECORD_ID_KEY = "id"


class _Mismatch(Exception):
    def __init__(self, expected: str, actual: Any):
        super().__init__(expected)
        self.expected = expected
        self.actual = type(actual).__name__


@dataclass
class EvaluationResult:
    evaluated: int = 0
    matched_ids: List[Any] = field(default_factory=list)
    issues: List[TypeMismatch] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def matched(self) -> int:
        return len(self.matched_ids)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _identity(value: str) -> str:
    return value


def _casefold(value: str) -> str:
    return value.casefold()


class RuleEvaluator:
    """Evaluates ConditionSets against plain mapping records (one per client)."""

    def __init__(self, fields: FieldRegistry = CLIENT_FIELDS):
        self.fields = fields

    # ------------------------------------------------------------------
    # single record
    # ------------------------------------------------------------------
    def evaluate(
        self,
        record: Mapping[str, Any],
        condition_set: ConditionSet,
        issues: Optional[List[TypeMismatch]] = None,
    ) -> bool:
        results = (self.evaluate_condition(record, c, issues) for c in condition_set.conditions)
        # all()/any() stop at the first decisive result
        if condition_set.match_type == "all":
            return all(results)
        return any(results)

    def evaluate_condition(
        self,
        record: Mapping[str, Any],
        condition: Condition,
        issues: Optional[List[TypeMismatch]] = None,
    ) -> bool:
        descriptor = self.fields.get(condition.field)

        actual = record.get(condition.field)
        if actual is None:
            return False

        try:
            actual = self._check_type(descriptor, actual)
        except _Mismatch as e:
            mismatch = TypeMismatch(
                record_id=record.get(RECORD_ID_KEY),
                field=condition.field,
                expected=e.expected,
                actual=e.actual,
                condition_id=condition.id,
            )
            logger.warning(f"Segment evaluation type mismatch: {mismatch.describe()}")
            if issues is not None:
                issues.append(mismatch)
            return False

        return self._apply(descriptor, condition, actual)

    # ------------------------------------------------------------------
    # population
    # ------------------------------------------------------------------
    def count_matches(
        self,
        records: Iterable[Mapping[str, Any]],
        condition_set: ConditionSet,
    ) -> EvaluationResult:
        """Run the condition set over every record; malformed records never abort the pass."""
        start = time.perf_counter()
        result = EvaluationResult()
        for record in records:
            result.evaluated += 1
            if self.evaluate(record, condition_set, result.issues):
                result.matched_ids.append(record.get(RECORD_ID_KEY))
        result.duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            f"Evaluated {result.evaluated} records: matched={result.matched} "
            f"type_mismatches={len(result.issues)} duration={result.duration_ms:.2f}ms"
        )
        return result

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    @staticmethod
    def _check_type(descriptor: FieldDescriptor, actual: Any) -> Any:
        if descriptor.multi:
            if not isinstance(actual, (list, tuple, set, frozenset)):
                raise _Mismatch("list of strings", actual)
            for item in actual:
                if not isinstance(item, str):
                    raise _Mismatch("list of strings", item)
            return list(actual)
        if descriptor.value_type == "number":
            if not _is_number(actual):
                raise _Mismatch("number", actual)
        elif descriptor.value_type == "boolean":
            if not isinstance(actual, bool):
                raise _Mismatch("boolean", actual)
        elif not isinstance(actual, str):
            raise _Mismatch("string", actual)
        return actual

    def _apply(self, descriptor: FieldDescriptor, condition: Condition, actual: Any) -> bool:
        op = condition.operator
        value = condition.value

        if isinstance(value, RangeValue):
            # Inclusive on both ends; min > max matches nothing
            return value.min <= actual <= value.max

        if isinstance(value, NumberValue):
            return _compare(op, actual, value.value)

        if isinstance(value, BooleanValue):
            if op == EQUALS:
                return actual is value.value
            if op == NOT_EQUALS:
                return actual is not value.value

        fold: Callable[[str], str] = _casefold if descriptor.case_insensitive else _identity

        if descriptor.multi:
            members = {fold(m) for m in actual}
            if isinstance(value, StringSetValue):
                wanted = {fold(v) for v in value.values}
                if op == EQUALS:
                    return members == wanted
                if op == NOT_EQUALS:
                    return members != wanted
                if op == CONTAINS:
                    return wanted <= members
                if op == NOT_CONTAINS:
                    return members.isdisjoint(wanted)
            elif isinstance(value, StringValue):
                if op == CONTAINS:
                    return fold(value.value) in members
                if op == NOT_CONTAINS:
                    return fold(value.value) not in members

        elif isinstance(value, StringValue):
            text, wanted = fold(actual), fold(value.value)
            if op == EQUALS:
                return text == wanted
            if op == NOT_EQUALS:
                return text != wanted
            if op == CONTAINS:
                return wanted in text
            if op == NOT_CONTAINS:
                return wanted not in text
            if op == STARTS_WITH:
                return text.startswith(wanted)
            if op == ENDS_WITH:
                return text.endswith(wanted)

        raise SegmentValidationError(
            f"no evaluation rule for {op} with {value.kind} value on field {condition.field}"
        )


def _compare(op: str, actual: float, expected: float) -> bool:
    if op == EQUALS:
        return actual == expected
    if op == NOT_EQUALS:
        return actual != expected
    if op == GREATER_THAN:
        return actual > expected
    if op == LESS_THAN:
        return actual < expected
    raise SegmentValidationError(f"no numeric comparison for operator {op}")
