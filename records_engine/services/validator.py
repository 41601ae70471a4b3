from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any

from records_engine.errors import InvalidOperator, InvalidValue, UnknownField
from records_engine.resources import FieldType, ResourceSchema
from records_engine.schemas import OPERATORS, Predicate, ScalarValue

_STRING_ONLY_OPERATORS = frozenset({"contains", "starts_with", "ends_with"})
_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (bool, int, float, str))


def _is_iso_date(value: str) -> bool:
    for parser in (date.fromisoformat, datetime.fromisoformat):
        try:
            parser(value)
            return True
        except ValueError:
            continue
    return False


def parse_predicate(raw: Predicate | dict[str, Any]) -> Predicate:
    """Turn caller input into a ``Predicate`` without consulting any schema."""
    if isinstance(raw, Predicate):
        return raw
    if not isinstance(raw, dict):
        raise InvalidValue("Predicate must be an object with field, operator and value")

    field = raw.get("field")
    if not isinstance(field, str) or not field.strip():
        raise UnknownField("Predicate field must be a non-empty string", field=str(field) if field is not None else None)
    operator = raw.get("operator", raw.get("op"))
    if operator not in OPERATORS:
        raise InvalidOperator(f"Unsupported operator '{operator}'", field=field)

    value = raw.get("value")
    if isinstance(value, (list, tuple)):
        if not all(_is_scalar(item) for item in value):
            raise InvalidValue("List values may only contain strings, numbers or booleans", field=field)
        value = tuple(value)
    elif not _is_scalar(value):
        raise InvalidValue("Predicate value must be a string, number, boolean or a list of them", field=field)
    return Predicate(field=field, operator=operator, value=value)


def _coerce_scalar(field: str, field_type: FieldType, value: ScalarValue) -> ScalarValue:
    if field_type == "string":
        if isinstance(value, bool):
            raise InvalidValue(f"Field '{field}' expects text, got a boolean", field=field)
        if isinstance(value, (int, float)):
            return str(value)
        return value

    if field_type == "number":
        if isinstance(value, bool):
            raise InvalidValue(f"Field '{field}' expects a number, got a boolean", field=field)
        if isinstance(value, str):
            text = value.strip()
            try:
                value = int(text)
            except ValueError:
                try:
                    value = float(text)
                except ValueError as exc:
                    raise InvalidValue(f"Field '{field}' expects a number, got '{value}'", field=field) from exc
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidValue(f"Field '{field}' expects a finite number", field=field)
        return value

    if field_type == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
            return value.strip().lower() in _TRUE_STRINGS
        raise InvalidValue(f"Field '{field}' expects true or false", field=field)

    if not isinstance(value, str) or not _is_iso_date(value):
        raise InvalidValue(f"Field '{field}' expects an ISO-8601 date string", field=field)
    return value


def validate_predicate(resource: ResourceSchema, predicate: Predicate) -> Predicate:
    """Check one predicate against the resource allow-list.

    Returns the predicate with its value normalised to the field's type
    (numeric strings on number fields become numbers, and so on). Running it
    again on its own output returns an equal predicate.
    """
    field = predicate.field
    if not resource.has_field(field):
        raise UnknownField(f"Unknown field '{field}' for resource '{resource.name}'", field=field)

    field_type = resource.field_type(field)
    operator = predicate.operator
    if operator not in resource.allowed_operators(field):
        raise InvalidOperator(
            f"Operator '{operator}' is not supported for {field_type} field '{field}'",
            field=field,
        )

    value = predicate.value
    if operator == "in":
        if not isinstance(value, tuple):
            raise InvalidValue(f"Operator 'in' on '{field}' requires a list value", field=field)
        if not value:
            raise InvalidValue(f"Operator 'in' on '{field}' requires at least one value", field=field)
        normalized: ScalarValue | tuple[ScalarValue, ...] = tuple(_coerce_scalar(field, field_type, item) for item in value)
    else:
        if isinstance(value, tuple):
            raise InvalidValue(f"Operator '{operator}' on '{field}' requires a single value", field=field)
        if operator in _STRING_ONLY_OPERATORS and not isinstance(value, str):
            raise InvalidValue(f"Operator '{operator}' on '{field}' requires a string value", field=field)
        if operator in _STRING_ONLY_OPERATORS and not value:
            raise InvalidValue(f"Operator '{operator}' on '{field}' requires a non-empty string", field=field)
        normalized = _coerce_scalar(field, field_type, value)

    if normalized == value and type(normalized) is type(value):
        return predicate
    return predicate.model_copy(update={"value": normalized})
