from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    ValidationInfo,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..core.exceptions import SegmentValidationError
from ..services.segment_fields import (
    BETWEEN,
    CLIENT_FIELDS,
    EQUALS,
    NOT_EQUALS,
    FieldDescriptor,
    FieldRegistry,
)


Operator = Literal[
    "equals",
    "notEquals",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "greaterThan",
    "lessThan",
    "between",
]
MatchType = Literal["all", "any"]
Number = Union[StrictInt, StrictFloat]


class CamelModel(BaseModel):
    # Wire/persisted names are camelCase (matchType, isSystem, clientCount ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Condition values: one variant per value shape, discriminated by `kind`
# ---------------------------------------------------------------------------
class StringValue(BaseModel):
    kind: Literal["string"] = "string"
    value: str

    def raw(self) -> Any:
        return self.value


class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: Number

    def raw(self) -> Any:
        return self.value


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: StrictBool

    def raw(self) -> Any:
        return self.value


class RangeValue(BaseModel):
    """Inclusive [min, max]. min > max is accepted and simply matches nothing."""

    kind: Literal["range"] = "range"
    min: Number
    max: Number

    def raw(self) -> Any:
        return [self.min, self.max]


class StringSetValue(BaseModel):
    kind: Literal["string_set"] = "string_set"
    values: List[str] = Field(min_length=1)

    def raw(self) -> Any:
        return list(self.values)


ConditionValue = Annotated[
    Union[StringValue, NumberValue, BooleanValue, RangeValue, StringSetValue],
    Field(discriminator="kind"),
]


def _fields_from(info: ValidationInfo) -> FieldRegistry:
    """Field table for validation; callers may pass their own via context={"fields": ...}."""
    if isinstance(info.context, dict) and info.context.get("fields") is not None:
        return info.context["fields"]
    return CLIENT_FIELDS


def _to_number(raw: Any) -> Union[int, float]:
    if isinstance(raw, bool):
        raise SegmentValidationError("expected a number, got a boolean")
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise SegmentValidationError("number must be finite")
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            value = float(text)
        except ValueError:
            raise SegmentValidationError(f"expected a number, got {raw!r}") from None
        if not math.isfinite(value):
            raise SegmentValidationError("number must be finite")
        return value
    raise SegmentValidationError(f"expected a number, got {type(raw).__name__}")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    # The editor's Yes/No select sends "true"/"false"
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    raise SegmentValidationError(f"expected true or false, got {raw!r}")


def coerce_value(descriptor: FieldDescriptor, operator: str, raw: Any) -> dict:
    """Turn a raw JSON condition value into the variant matching field type and operator."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise SegmentValidationError(f"condition on {descriptor.field_id} needs a value")

    if operator == BETWEEN:
        if not isinstance(raw, (list, tuple)) or len(raw) != 2:
            raise SegmentValidationError("between needs a two-element [min, max] value")
        return {"kind": "range", "min": _to_number(raw[0]), "max": _to_number(raw[1])}

    if descriptor.value_type == "number":
        return {"kind": "number", "value": _to_number(raw)}

    if descriptor.value_type == "boolean":
        return {"kind": "boolean", "value": _to_bool(raw)}

    if isinstance(raw, (list, tuple, set, frozenset)):
        if not descriptor.multi:
            raise SegmentValidationError(f"{descriptor.field_id} takes a single value, not a list")
        values = [str(v) for v in raw if v is not None and str(v).strip()]
        if not values:
            raise SegmentValidationError(f"condition on {descriptor.field_id} needs a value")
        return {"kind": "string_set", "values": list(dict.fromkeys(values))}

    if not isinstance(raw, str):
        raise SegmentValidationError(f"{descriptor.field_id} expects text, got {type(raw).__name__}")

    if descriptor.multi and operator in (EQUALS, NOT_EQUALS):
        # Equality on a set-valued field compares whole sets
        return {"kind": "string_set", "values": [raw]}
    return {"kind": "string", "value": raw}


def expected_kinds(descriptor: FieldDescriptor, operator: str) -> tuple:
    if operator == BETWEEN:
        return ("range",)
    if descriptor.value_type == "number":
        return ("number",)
    if descriptor.value_type == "boolean":
        return ("boolean",)
    if descriptor.multi:
        if operator in (EQUALS, NOT_EQUALS):
            return ("string_set",)
        return ("string", "string_set")
    return ("string",)


# ---------------------------------------------------------------------------
# Rule model
# ---------------------------------------------------------------------------
class Condition(CamelModel):
    id: Optional[str] = None
    field: str
    operator: Operator
    value: ConditionValue

    @model_validator(mode="before")
    @classmethod
    def _coerce_raw_value(cls, data: Any, info: ValidationInfo) -> Any:
        if not isinstance(data, dict):
            return data
        field_id = data.get("field")
        operator = data.get("operator")
        if not isinstance(field_id, str) or not isinstance(operator, str):
            return data  # let the field validators report it

        descriptor = _fields_from(info).get(field_id)
        if not descriptor.allows(operator):
            raise SegmentValidationError(
                f"operator {operator} is not allowed for {descriptor.value_type} field {field_id}"
            )

        raw = data.get("value")
        if isinstance(raw, BaseModel) or (isinstance(raw, dict) and "kind" in raw):
            return data
        return {**data, "value": coerce_value(descriptor, operator, raw)}

    @model_validator(mode="after")
    def _check_value(self, info: ValidationInfo) -> "Condition":
        descriptor = _fields_from(info).get(self.field)
        if not descriptor.allows(self.operator):
            raise SegmentValidationError(
                f"operator {self.operator} is not allowed for {descriptor.value_type} field {self.field}"
            )
        if self.value.kind not in expected_kinds(descriptor, self.operator):
            raise SegmentValidationError(
                f"{self.value.kind} value does not fit {self.operator} on {self.field}"
            )
        if descriptor.value_type == "enum" and (descriptor.multi or self.operator in (EQUALS, NOT_EQUALS)):
            values = self.value.values if isinstance(self.value, StringSetValue) else [self.value.value]
            unknown = [v for v in values if v not in descriptor.options]
            if unknown:
                raise SegmentValidationError(
                    f"{self.field} has no option {', '.join(unknown)}; "
                    f"expected one of {', '.join(descriptor.options)}"
                )
        return self

    @field_serializer("value")
    def _serialize_value(self, value: Any) -> Any:
        return value.raw()


class ConditionSet(CamelModel):
    match_type: MatchType = "all"
    conditions: List[Condition]

    @field_validator("conditions")
    @classmethod
    def _not_empty(cls, conditions: List[Condition]) -> List[Condition]:
        if not conditions:
            raise SegmentValidationError("a condition set needs at least one condition")
        return conditions

    @model_validator(mode="after")
    def _assign_ids(self) -> "ConditionSet":
        seen = set()
        for cond in self.conditions:
            if cond.id is None:
                continue
            if cond.id in seen:
                raise SegmentValidationError(f"duplicate condition id: {cond.id}")
            seen.add(cond.id)
        n = 0
        for cond in self.conditions:
            if cond.id is not None:
                continue
            n += 1
            while f"c{n}" in seen:
                n += 1
            cond.id = f"c{n}"
            seen.add(cond.id)
        return self


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------
def normalize_name(name: str) -> str:
    name = name.strip()
    if not name:
        raise SegmentValidationError("segment name must not be empty")
    return name


def normalize_tags(tags: List[str]) -> List[str]:
    """Strip, drop blanks, deduplicate keeping first-seen order."""
    cleaned = [t.strip() for t in tags if t and t.strip()]
    return list(dict.fromkeys(cleaned))


SegmentName = Annotated[str, AfterValidator(normalize_name)]
TagList = Annotated[List[str], AfterValidator(normalize_tags)]


class Segment(CamelModel):
    id: str
    name: SegmentName
    description: str = ""
    tags: TagList = Field(default_factory=list)
    filter: ConditionSet
    is_system: bool = False
    is_active: bool = True
    # Last evaluated membership size; advisory only
    client_count: int = 0
    # None while client_count is only an estimate (e.g. copied from a duplicate's source)
    counted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def count_is_estimate(self) -> bool:
        return self.counted_at is None


class SegmentCreate(CamelModel):
    name: SegmentName
    description: str = ""
    tags: TagList = Field(default_factory=list)
    filter: ConditionSet


class SegmentPatch(CamelModel):
    """Partial update; only fields explicitly sent are applied."""

    name: Optional[SegmentName] = None
    description: Optional[str] = None
    tags: Optional[TagList] = None
    filter: Optional[ConditionSet] = None

    @field_validator("description", mode="before")
    @classmethod
    def _null_description_clears(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("name", "tags", "filter", mode="before")
    @classmethod
    def _reject_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            raise SegmentValidationError(f"{info.field_name} cannot be null; leave it out to keep the current value")
        return value

    def changes(self) -> dict:
        return {k: getattr(self, k) for k in self.model_fields_set if getattr(self, k) is not None}


class SegmentActiveRequest(CamelModel):
    is_active: bool


class SegmentListResponse(CamelModel):
    total: int
    items: List[Segment] = Field(default_factory=list)


class SegmentTagsResponse(CamelModel):
    tags: List[str] = Field(default_factory=list)
