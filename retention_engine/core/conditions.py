"""Retention rule conditions.

Conditions are a small predicate AST over typed file attributes:

    Equals | Contains | In | Gte | Lte | And

They are validated once, when a rule is saved, and stored as JSON. Evaluation
never raises: an attribute that is absent (e.g. a missing metadata key) or of
the wrong runtime type simply does not match.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from retention_engine.core.errors import RuleValidationError

if TYPE_CHECKING:
    from retention_engine.db.models import FileMetadata


METADATA_PREFIX = "metadata."

FIELD_KINDS: dict[str, str] = {
    "age_days": "number",
    "size": "number",
    "created_at": "date",
    "tags": "list",
    "access_level": "scalar",
    "mime_type": "scalar",
}

_MISSING = object()


def field_kind(name: str) -> str:
    """Return the kind of a field reference, or raise ValueError if unknown."""
    if name.startswith(METADATA_PREFIX) and len(name) > len(METADATA_PREFIX):
        return "any"
    kind = FIELD_KINDS.get(name)
    if kind is None:
        allowed = sorted(FIELD_KINDS) + [f"{METADATA_PREFIX}<key>"]
        raise ValueError(f"Unknown condition field '{name}'. Allowed: {allowed}")
    return kind


@dataclass(frozen=True)
class FileAttributes:
    """Attributes a rule condition can reference, derived for one instant."""

    age_days: int
    size: int
    created_at: datetime
    tags: tuple[str, ...] = ()
    access_level: str | None = None
    mime_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, file: "FileMetadata", as_of: datetime) -> "FileAttributes":
        created_at = _as_utc(file.created_at)
        age_seconds = (_as_utc(as_of) - created_at).total_seconds()
        return cls(
            age_days=max(0, math.floor(age_seconds / 86400)),
            size=file.size or 0,
            created_at=created_at,
            tags=tuple(file.tags or ()),
            access_level=file.access_level,
            mime_type=file.mime_type,
            metadata=dict(file.custom_metadata or {}),
        )

    def lookup(self, name: str) -> Any:
        if name.startswith(METADATA_PREFIX):
            return self.metadata.get(name[len(METADATA_PREFIX):], _MISSING)
        value = getattr(self, name, _MISSING)
        return _MISSING if value is None else value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def _compare(actual: Any, expected: Any) -> int | None:
    """Three-way compare for Gte/Lte; None when the values are not comparable."""
    if isinstance(expected, datetime):
        actual_dt = _coerce_datetime(actual)
        if actual_dt is None:
            return None
        expected_dt = _as_utc(expected)
        return (actual_dt > expected_dt) - (actual_dt < expected_dt)
    if isinstance(actual, bool) or not isinstance(actual, (int, float, str)):
        return None
    try:
        actual_num = float(actual)
    except ValueError:
        return None
    expected_num = float(expected)
    return (actual_num > expected_num) - (actual_num < expected_num)


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def matches(self, attrs: FileAttributes) -> bool:
        raise NotImplementedError


class Equals(_Node):
    op: Literal["eq"] = "eq"
    field: str
    value: Union[bool, int, float, str]

    @model_validator(mode="after")
    def _check_field(self) -> "Equals":
        if field_kind(self.field) in ("list", "date"):
            raise ValueError(f"'eq' cannot be applied to {self.field}; use 'contains' or 'gte'/'lte'")
        return self

    def matches(self, attrs: FileAttributes) -> bool:
        actual = attrs.lookup(self.field)
        if actual is _MISSING:
            return False
        return actual == self.value


class Contains(_Node):
    """List-valued attribute contains value (e.g. tags contains "temp")."""

    op: Literal["contains"] = "contains"
    field: str
    value: Union[int, str]

    @model_validator(mode="after")
    def _check_field(self) -> "Contains":
        if field_kind(self.field) not in ("list", "any"):
            raise ValueError(f"'contains' requires a list field, got {self.field}")
        return self

    def matches(self, attrs: FileAttributes) -> bool:
        actual = attrs.lookup(self.field)
        if not isinstance(actual, (list, tuple, set, frozenset)):
            return False
        return self.value in actual


class In(_Node):
    """Scalar attribute is one of values."""

    op: Literal["in"] = "in"
    field: str
    values: list[Union[bool, int, float, str]] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_field(self) -> "In":
        if field_kind(self.field) in ("list", "date"):
            raise ValueError(f"'in' cannot be applied to {self.field}")
        return self

    def matches(self, attrs: FileAttributes) -> bool:
        actual = attrs.lookup(self.field)
        if actual is _MISSING or isinstance(actual, (list, dict)):
            return False
        return actual in self.values


class _Comparison(_Node):
    field: str
    value: Union[int, float, datetime]

    @model_validator(mode="after")
    def _check_field(self) -> "_Comparison":
        kind = field_kind(self.field)
        if kind in ("list", "scalar"):
            raise ValueError(f"'{self.op}' requires a numeric or date field, got {self.field}")
        if kind == "date" and not isinstance(self.value, datetime):
            raise ValueError(f"'{self.op}' on {self.field} requires an ISO datetime value")
        if kind == "number" and isinstance(self.value, datetime):
            raise ValueError(f"'{self.op}' on {self.field} requires a numeric value")
        return self


class Gte(_Comparison):
    op: Literal["gte"] = "gte"

    def matches(self, attrs: FileAttributes) -> bool:
        actual = attrs.lookup(self.field)
        if actual is _MISSING:
            return False
        result = _compare(actual, self.value)
        return result is not None and result >= 0


class Lte(_Comparison):
    op: Literal["lte"] = "lte"

    def matches(self, attrs: FileAttributes) -> bool:
        actual = attrs.lookup(self.field)
        if actual is _MISSING:
            return False
        result = _compare(actual, self.value)
        return result is not None and result <= 0


class And(_Node):
    op: Literal["and"] = "and"
    conditions: list["Condition"] = Field(min_length=1)

    def matches(self, attrs: FileAttributes) -> bool:
        return all(condition.matches(attrs) for condition in self.conditions)


Condition = Annotated[
    Union[Equals, Contains, In, Gte, Lte, And],
    Field(discriminator="op"),
]

And.model_rebuild()

_condition_adapter: TypeAdapter[Condition] = TypeAdapter(Condition)


def _expand_shorthand(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Expand the mapping shorthand into the AST form.

    {"tags": ["temp"], "access_level": "PRIVATE"} becomes
    and(contains(tags, "temp"), eq(access_level, "PRIVATE")).
    """
    if not raw:
        raise ValueError("Condition must not be empty")
    nodes: list[dict[str, Any]] = []
    for name, value in raw.items():
        kind = field_kind(name)
        if isinstance(value, list):
            if not value:
                raise ValueError(f"Condition on '{name}' has an empty value list")
            if kind == "list":
                nodes.extend({"op": "contains", "field": name, "value": item} for item in value)
            else:
                nodes.append({"op": "in", "field": name, "values": value})
        elif isinstance(value, dict):
            raise ValueError(f"Nested mapping for '{name}' is not a valid condition")
        else:
            nodes.append({"op": "eq", "field": name, "value": value})
    return {"op": "and", "conditions": nodes}


def parse_condition(raw: Any) -> Condition:
    """Validate a stored or submitted condition. Raises RuleValidationError."""
    if not isinstance(raw, dict):
        raise RuleValidationError("Condition must be a JSON object")
    try:
        if "op" not in raw:
            raw = _expand_shorthand(raw)
        return _condition_adapter.validate_python(raw)
    except (ValidationError, ValueError) as exc:
        raise RuleValidationError(f"Invalid rule condition: {exc}") from exc


def condition_to_json(condition: Condition) -> dict[str, Any]:
    return condition.model_dump(mode="json")
