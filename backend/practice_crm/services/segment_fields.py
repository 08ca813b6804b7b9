"""
Client fields that segment conditions can reference.

The field -> operator coupling lives in one static table (OPERATORS_BY_TYPE);
nothing else in the codebase decides which operators a field accepts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional, Tuple

from ..core.exceptions import SegmentValidationError


ValueType = Literal["string", "number", "boolean", "enum"]

EQUALS = "equals"
NOT_EQUALS = "notEquals"
CONTAINS = "contains"
NOT_CONTAINS = "notContains"
STARTS_WITH = "startsWith"
ENDS_WITH = "endsWith"
GREATER_THAN = "greaterThan"
LESS_THAN = "lessThan"
BETWEEN = "between"

ALL_OPERATORS: Tuple[str, ...] = (
    EQUALS,
    NOT_EQUALS,
    CONTAINS,
    NOT_CONTAINS,
    STARTS_WITH,
    ENDS_WITH,
    GREATER_THAN,
    LESS_THAN,
    BETWEEN,
)

OPERATOR_LABELS: Dict[str, str] = {
    EQUALS: "Equals",
    NOT_EQUALS: "Does Not Equal",
    CONTAINS: "Contains",
    NOT_CONTAINS: "Does Not Contain",
    STARTS_WITH: "Starts With",
    ENDS_WITH: "Ends With",
    GREATER_THAN: "Greater Than",
    LESS_THAN: "Less Than",
    BETWEEN: "Between",
}

STRING_OPERATORS = (EQUALS, NOT_EQUALS, CONTAINS, NOT_CONTAINS, STARTS_WITH, ENDS_WITH)
NUMBER_OPERATORS = (EQUALS, NOT_EQUALS, GREATER_THAN, LESS_THAN, BETWEEN)
BOOLEAN_OPERATORS = (EQUALS, NOT_EQUALS)
# Set-valued fields (diagnoses, tags): prefix/suffix has no meaning on a set
SET_OPERATORS = (EQUALS, NOT_EQUALS, CONTAINS, NOT_CONTAINS)

OPERATORS_BY_TYPE: Dict[str, Tuple[str, ...]] = {
    "string": STRING_OPERATORS,
    "enum": STRING_OPERATORS,
    "number": NUMBER_OPERATORS,
    "boolean": BOOLEAN_OPERATORS,
}


@dataclass(frozen=True)
class FieldDescriptor:
    field_id: str
    label: str
    value_type: ValueType
    options: Optional[Tuple[str, ...]] = None
    option_labels: Dict[str, str] = field(default_factory=dict, compare=False)
    multi: bool = False
    case_insensitive: bool = False

    @property
    def allowed_operators(self) -> Tuple[str, ...]:
        if self.multi:
            return SET_OPERATORS
        return OPERATORS_BY_TYPE[self.value_type]

    def allows(self, operator: str) -> bool:
        return operator in self.allowed_operators

    def describe(self) -> dict:
        options = None
        if self.options is not None:
            options = [{"value": o, "label": self.option_labels.get(o, o)} for o in self.options]
        return {
            "field": self.field_id,
            "label": self.label,
            "valueType": self.value_type,
            "multi": self.multi,
            "caseInsensitive": self.case_insensitive,
            "operators": [{"value": op, "label": OPERATOR_LABELS[op]} for op in self.allowed_operators],
            "options": options,
        }


class FieldRegistry:
    """Lookup table of FieldDescriptors keyed by field id."""

    def __init__(self, descriptors: Iterable[FieldDescriptor]):
        self._fields: Dict[str, FieldDescriptor] = {}
        for d in descriptors:
            if d.field_id in self._fields:
                raise ValueError(f"duplicate field descriptor: {d.field_id}")
            if d.value_type == "enum" and not d.options:
                raise ValueError(f"enum field {d.field_id} needs options")
            if d.multi and d.value_type not in ("string", "enum"):
                raise ValueError(f"set-valued field {d.field_id} must be string or enum")
            self._fields[d.field_id] = d

    def get(self, field_id: str) -> FieldDescriptor:
        try:
            return self._fields[field_id]
        except KeyError:
            raise SegmentValidationError(f"Unknown segment field: {field_id}") from None

    def __contains__(self, field_id: object) -> bool:
        return field_id in self._fields

    def __iter__(self):
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def describe(self) -> List[dict]:
        return [d.describe() for d in self._fields.values()]


def _enum(field_id: str, label: str, options: Dict[str, str], **kwargs) -> FieldDescriptor:
    return FieldDescriptor(
        field_id=field_id,
        label=label,
        value_type="enum",
        options=tuple(options),
        option_labels=dict(options),
        **kwargs,
    )


# Client attributes offered by the segment editor
CLIENT_FIELDS = FieldRegistry(
    [
        _enum(
            "status",
            "Client Status",
            {"active": "Active", "inactive": "Inactive", "pending": "Pending", "terminated": "Terminated"},
        ),
        FieldDescriptor("lastSession", "Days Since Last Session", "number"),
        FieldDescriptor("joinDate", "Days Since Joined", "number"),
        FieldDescriptor("sessionCount", "Number of Sessions", "number"),
        _enum(
            "diagnoses",
            "Diagnoses",
            {
                "anxiety": "Anxiety",
                "depression": "Depression",
                "bipolar": "Bipolar Disorder",
                "ptsd": "PTSD",
                "adhd": "ADHD",
                "ocd": "OCD",
            },
            multi=True,
        ),
        FieldDescriptor("ageRange", "Age Range", "string"),
        _enum(
            "gender",
            "Gender",
            {"male": "Male", "female": "Female", "non-binary": "Non-binary", "other": "Other"},
        ),
        _enum(
            "insuranceType",
            "Insurance Type",
            {
                "private": "Private Insurance",
                "medicare": "Medicare",
                "medicaid": "Medicaid",
                "self-pay": "Self-Pay",
            },
        ),
        _enum(
            "packageType",
            "Service Package",
            {"standard": "Standard", "premium": "Premium", "intensive": "Intensive Care"},
        ),
        _enum(
            "referralSource",
            "Referral Source",
            {
                "google": "Google Search",
                "doctor": "Doctor Referral",
                "friend": "Friend/Family",
                "insurance": "Insurance Directory",
                "social-media": "Social Media",
            },
        ),
        FieldDescriptor("therapist", "Assigned Therapist", "string", case_insensitive=True),
        FieldDescriptor("sessionFrequency", "Sessions per Month", "number"),
        FieldDescriptor("hasFeedback", "Has Provided Feedback", "boolean"),
        FieldDescriptor("hasCompletedForms", "Completed Required Forms", "boolean"),
        FieldDescriptor("tags", "Client Tags", "string", multi=True, case_insensitive=True),
        FieldDescriptor("lifetimeValue", "Lifetime Value ($)", "number"),
    ]
)
