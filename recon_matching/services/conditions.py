"""Condition evaluation against transaction records.

A condition compares one field of a record with a literal value. Field values
and literals are coerced into a closed set of typed values (str, Decimal, date,
bool) before comparison, so ordering is never lexical. A value that cannot be
coerced makes the condition false instead of raising; rule activation catches
those mistakes earlier through ``validate_condition``.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from recon_matching.logger import get_logger
from recon_matching.schemas.rules import Comparator, Condition, FieldType

logger = get_logger(__name__)

TypedValue = str | Decimal | date | bool

# Operator-facing dot paths mapped to transaction attributes
FIELD_ALIASES: dict[str, str] = {
    "transaction.id": "transaction_number",
    "transaction.number": "transaction_number",
    "transaction.amount": "amount",
    "transaction.currency": "currency",
    "transaction.date": "txn_date",
    "transaction.description": "description",
    "transaction.reference": "reference",
    "transaction.source": "source",
    "date": "txn_date",
    "partner": "partner_id",
    "partner.id": "partner_id",
    "partner.name": "partner_name",
    "account.number": "account_number",
    "reconciliation.status": "status",
    "reconciliation.match_type": "match_type",
    "reconciliation.confidence": "match_confidence",
}

EQUALITY = frozenset({Comparator.EQUALS, Comparator.NOT_EQUALS})
MEMBERSHIP = frozenset({Comparator.IN, Comparator.NOT_IN})
NULL_CHECKS = frozenset({Comparator.IS_NULL, Comparator.IS_NOT_NULL})
TEXT_MATCH = frozenset(
    {
        Comparator.CONTAINS,
        Comparator.NOT_CONTAINS,
        Comparator.STARTS_WITH,
        Comparator.ENDS_WITH,
    }
)
ORDERING = frozenset(
    {
        Comparator.GREATER_THAN,
        Comparator.LESS_THAN,
        Comparator.GREATER_THAN_OR_EQUAL,
        Comparator.LESS_THAN_OR_EQUAL,
        Comparator.BETWEEN,
    }
)

ALLOWED_COMPARATORS: dict[FieldType, frozenset[Comparator]] = {
    FieldType.STRING: EQUALITY | TEXT_MATCH | MEMBERSHIP | NULL_CHECKS,
    FieldType.NUMBER: EQUALITY | ORDERING | MEMBERSHIP | NULL_CHECKS,
    FieldType.AMOUNT: EQUALITY | ORDERING | MEMBERSHIP | NULL_CHECKS,
    FieldType.DATE: EQUALITY | ORDERING | MEMBERSHIP | NULL_CHECKS,
    FieldType.BOOLEAN: EQUALITY | NULL_CHECKS,
}

_TRUE_STRINGS = {"true", "1", "yes", "y"}
_FALSE_STRINGS = {"false", "0", "no", "n"}


class CoercionError(ValueError):
    """Raised when a value cannot be coerced to the declared field type."""


def _walk(record: Any, path: str) -> Any:
    value = record
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


def resolve_field(record: Any, field: str) -> Any:
    """Resolve a dot path on an ORM object or mapping, honoring aliases."""
    if isinstance(record, Mapping) and field in record:
        return record[field]
    attribute = FIELD_ALIASES.get(field, field)
    value = _walk(record, attribute)
    if value is None and attribute != field:
        value = _walk(record, field)
    return value


def coerce_value(value: Any, field_type: FieldType) -> TypedValue:
    """Coerce a raw value into the typed value for ``field_type``."""
    if value is None:
        raise CoercionError("value is null")
    if isinstance(value, Enum):
        value = value.value

    if field_type == FieldType.STRING:
        return str(value)

    if field_type in (FieldType.NUMBER, FieldType.AMOUNT):
        if isinstance(value, bool):
            raise CoercionError("boolean is not a number")
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise CoercionError(f"not a number: {value!r}") from exc
        if not number.is_finite():
            raise CoercionError(f"not a finite number: {value!r}")
        return number

    if field_type == FieldType.DATE:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                return date.fromisoformat(text)
            except ValueError:
                pass
            try:
                return datetime.fromisoformat(text).date()
            except ValueError as exc:
                raise CoercionError(f"not an ISO date: {value!r}") from exc
        raise CoercionError(f"not a date: {value!r}")

    if field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise CoercionError(f"not a boolean: {value!r}")

    raise CoercionError(f"unsupported field type: {field_type}")


def _fold_case(value: TypedValue, condition: Condition) -> TypedValue:
    if isinstance(value, str) and not condition.case_sensitive:
        return value.casefold()
    return value


def _coerce(value: Any, condition: Condition) -> TypedValue:
    return _fold_case(coerce_value(value, condition.field_type), condition)


def split_list_value(value: Any) -> list[Any]:
    """Return list operands; a comma separated string is split."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list | tuple | set | frozenset):
        return list(value)
    return [value]


def _is_null(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def evaluate_condition(condition: Condition, record: Any) -> bool:
    """Evaluate one condition against a record. Never raises on bad data."""
    raw = resolve_field(record, condition.field)
    comparator = condition.comparator

    if comparator == Comparator.IS_NULL:
        return _is_null(raw)
    if comparator == Comparator.IS_NOT_NULL:
        return not _is_null(raw)

    try:
        actual = _coerce(raw, condition)

        if comparator in MEMBERSHIP:
            options = {_coerce(item, condition) for item in split_list_value(condition.value)}
            found = actual in options
            return found if comparator == Comparator.IN else not found

        if comparator == Comparator.BETWEEN:
            if condition.value2 is None:
                return False
            low = _coerce(condition.value, condition)
            high = _coerce(condition.value2, condition)
            return low <= actual <= high  # type: ignore[operator]

        expected = _coerce(condition.value, condition)
    except CoercionError:
        return False

    if comparator == Comparator.EQUALS:
        return actual == expected
    if comparator == Comparator.NOT_EQUALS:
        return actual != expected

    if comparator in TEXT_MATCH:
        if not isinstance(actual, str) or not isinstance(expected, str):
            return False
        if comparator == Comparator.CONTAINS:
            return expected in actual
        if comparator == Comparator.NOT_CONTAINS:
            return expected not in actual
        if comparator == Comparator.STARTS_WITH:
            return actual.startswith(expected)
        return actual.endswith(expected)

    if isinstance(actual, str | bool) or type(actual) is not type(expected):
        return False
    if comparator == Comparator.GREATER_THAN:
        return actual > expected  # type: ignore[operator]
    if comparator == Comparator.LESS_THAN:
        return actual < expected  # type: ignore[operator]
    if comparator == Comparator.GREATER_THAN_OR_EQUAL:
        return actual >= expected  # type: ignore[operator]
    if comparator == Comparator.LESS_THAN_OR_EQUAL:
        return actual <= expected  # type: ignore[operator]

    logger.warning("Unhandled comparator", comparator=comparator.value, field=condition.field)
    return False


def validate_condition(condition: Condition) -> list[str]:
    """Return human readable problems with a condition (empty when valid)."""
    errors: list[str] = []
    label = f"Condition on '{condition.field}'"
    comparator = condition.comparator

    if comparator not in ALLOWED_COMPARATORS[condition.field_type]:
        errors.append(
            f"{label}: comparator '{comparator.value}' is not allowed for {condition.field_type.value} fields"
        )
        return errors

    if comparator in NULL_CHECKS:
        return errors

    if comparator in MEMBERSHIP:
        items = split_list_value(condition.value)
        if not items:
            errors.append(f"{label}: '{comparator.value}' requires at least one value")
        values = items
    elif comparator == Comparator.BETWEEN:
        if condition.value is None or condition.value2 is None:
            errors.append(f"{label}: 'between' requires both value and value2")
            return errors
        values = [condition.value, condition.value2]
    else:
        if condition.value is None:
            errors.append(f"{label}: '{comparator.value}' requires a value")
            return errors
        values = [condition.value]

    for value in values:
        try:
            coerce_value(value, condition.field_type)
        except CoercionError as exc:
            errors.append(f"{label}: {exc}")

    if comparator == Comparator.BETWEEN and not errors:
        low = coerce_value(condition.value, condition.field_type)
        high = coerce_value(condition.value2, condition.field_type)
        if low > high:  # type: ignore[operator]
            errors.append(f"{label}: 'between' lower bound is greater than upper bound")

    return errors
