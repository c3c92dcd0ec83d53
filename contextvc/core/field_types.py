"""Field value tags and the operations that dispatch on them.

A field value is stored as plain JSON next to a ``FieldType`` tag.
Validation and equality look at the tag instead of guessing from the
runtime type of the value, so ``True`` and ``1`` never compare equal
and two spellings of the same instant in a ``date`` field do.
"""

import json
import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..exceptions import ValidationError


class FieldType(str, Enum):
    """Type tag carried alongside every field value."""
    TEXT = "text"
    NUMBER = "number"
    JSON = "json"
    ARRAY = "array"
    BOOLEAN = "boolean"
    DATE = "date"


class FieldSource(str, Enum):
    """Where a field value came from."""
    MANUAL = "manual"
    API_TWITTER = "api_twitter"
    API_CRM = "api_crm"
    API_WEBHOOK = "api_webhook"
    CHAT = "chat"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def ensure_utc(dt: datetime) -> datetime:
    """Return *dt* as an aware UTC datetime. Naive values are treated as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any, field: str = "timestamp") -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC.

    Raises:
        ValidationError: If the value is not a recognisable timestamp.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Malformed timestamp: {value!r}", field=field)

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"Malformed timestamp: {value!r}", field=field) from None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _check_json_compatible(value: Any, field_name: Optional[str]) -> None:
    try:
        json.dumps(value, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Value is not JSON-serializable: {e}", field=field_name) from None


def _coerce_text(value: Any, field_name: Optional[str]) -> Any:
    if not isinstance(value, str):
        raise ValidationError("text field requires a string value", field=field_name)
    return value


def _coerce_number(value: Any, field_name: Optional[str]) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("number field requires a numeric value", field=field_name)
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("number field requires a finite value", field=field_name)
    return value


def _coerce_json(value: Any, field_name: Optional[str]) -> Any:
    if not isinstance(value, dict):
        raise ValidationError("json field requires an object value", field=field_name)
    _check_json_compatible(value, field_name)
    return value


def _coerce_array(value: Any, field_name: Optional[str]) -> Any:
    if not isinstance(value, (list, tuple)):
        raise ValidationError("array field requires a list value", field=field_name)
    value = list(value)
    _check_json_compatible(value, field_name)
    return value


def _coerce_boolean(value: Any, field_name: Optional[str]) -> Any:
    if not isinstance(value, bool):
        raise ValidationError("boolean field requires true or false", field=field_name)
    return value


def _coerce_date(value: Any, field_name: Optional[str]) -> Any:
    # Date-only values stay date-only; anything with a time is normalised to UTC.
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()).isoformat()
        except ValueError:
            pass
        return parse_timestamp(value, field=field_name or "field_value").isoformat()
    raise ValidationError("date field requires an ISO-8601 value", field=field_name)


_COERCERS: Dict[FieldType, Callable[[Any, Optional[str]], Any]] = {
    FieldType.TEXT: _coerce_text,
    FieldType.NUMBER: _coerce_number,
    FieldType.JSON: _coerce_json,
    FieldType.ARRAY: _coerce_array,
    FieldType.BOOLEAN: _coerce_boolean,
    FieldType.DATE: _coerce_date,
}


def coerce_value(field_type: FieldType, value: Any, field_name: Optional[str] = None) -> Any:
    """Validate *value* against its tag and return the storable form.

    Raises:
        ValidationError: If the value is null or does not match the tag.
    """
    if value is None:
        raise ValidationError("Field value cannot be null", field=field_name)
    return _COERCERS[FieldType(field_type)](value, field_name)


# ---------------------------------------------------------------------------
# Equality
# ---------------------------------------------------------------------------

def _deep_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_deep_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, (dict, list, tuple)) or isinstance(b, (dict, list, tuple)):
        return False
    return a == b


def _date_key(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            pass
        try:
            return parse_timestamp(value)
        except ValidationError:
            return value
    return value


def values_equal(a: Any, b: Any, field_type: Optional[FieldType] = None) -> bool:
    """Structural equality of two field values.

    When both sides share the ``date`` tag, values are compared as
    instants rather than as strings.
    """
    if field_type is not None and FieldType(field_type) == FieldType.DATE:
        return _date_key(a) == _date_key(b)
    return _deep_equal(a, b)
