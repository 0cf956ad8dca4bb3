import json
from datetime import datetime

from ..errors import ValidationError


def coerce_int(value, default=None):
    try:
        if value is None or value == "":
            return default
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_bool(value, default=False):
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_datetime(value, field="date"):
    """ISO date or datetime from a request; empty means None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")


def json_field(value, default=None, field="value"):
    """Decode a JSON encoded form field; lists and dicts pass through."""
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except ValueError:
        raise ValidationError(f"Invalid JSON in {field}")
