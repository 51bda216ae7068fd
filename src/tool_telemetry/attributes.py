"""
OTLP attribute flattening.

Converts the OTLP ``[{"key": ..., "value": {"stringValue": ...}}]`` convention
into a flat ``Dict[str, str]``. Used for resource, span, datapoint and log
attributes alike. Values are always strings; callers that need numbers
re-parse them with :func:`parse_int` / :func:`parse_float`.
"""

import json
import logging
import math
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

USER_ATTR_KEYS = ("user.id", "user_id", "trace.metadata.user.id", "trace.metadata.user_id")
TEAM_ATTR_KEYS = ("team.id", "team_id", "trace.metadata.team.id", "trace.metadata.team_id")


def flatten_attributes(attrs: Any) -> Dict[str, str]:
    """Convert an OTLP attributes list to a flat string map.

    Last write wins on duplicate keys. Entries without a usable ``value``
    map to ``""``. Never raises: anything that is not a list yields ``{}``
    and malformed entries are skipped.
    """
    if not isinstance(attrs, list):
        return {}

    result: Dict[str, str] = {}
    for attr in attrs:
        if not isinstance(attr, dict):
            continue
        key = attr.get("key")
        if not isinstance(key, str):
            continue
        result[key] = _value_to_string(attr.get("value"))
    return result


def _value_to_string(value: Any) -> str:
    """Render one OTLP ``AnyValue`` wrapper as a string."""
    if not isinstance(value, dict):
        return ""
    if "stringValue" in value:
        raw = value["stringValue"]
        return raw if isinstance(raw, str) else _scalar_to_string(raw)
    if "intValue" in value:
        return _scalar_to_string(value["intValue"])
    if "doubleValue" in value:
        return _scalar_to_string(value["doubleValue"])
    if "boolValue" in value:
        return _scalar_to_string(value["boolValue"])
    if "arrayValue" in value or "kvlistValue" in value:
        try:
            return json.dumps(_extract_native(value), separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError):
            return ""
    if "bytesValue" in value:
        raw = value["bytesValue"]
        return raw if isinstance(raw, str) else ""
    return ""


def _scalar_to_string(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw)


def _extract_native(value: Any) -> Any:
    """Extract a native Python value from a nested OTLP value wrapper."""
    if not isinstance(value, dict):
        return None
    if "stringValue" in value:
        return value["stringValue"]
    if "intValue" in value:
        parsed = parse_int(value["intValue"])
        return parsed if parsed is not None else value["intValue"]
    if "doubleValue" in value:
        return value["doubleValue"]
    if "boolValue" in value:
        return value["boolValue"]
    if "kvlistValue" in value:
        kvlist = value["kvlistValue"]
        entries = kvlist.get("values") if isinstance(kvlist, dict) else None
        return {
            kv.get("key", ""): _extract_native(kv.get("value"))
            for kv in entries or []
            if isinstance(kv, dict)
        }
    if "arrayValue" in value:
        array = value["arrayValue"]
        entries = array.get("values") if isinstance(array, dict) else None
        return [_extract_native(v) for v in entries or []]
    if "bytesValue" in value:
        return value["bytesValue"]
    return None


def first_present(attrs: Dict[str, str], keys: Iterable[str]) -> Optional[str]:
    """Return the first non-blank value among *keys*, stripped."""
    for key in keys:
        value = (attrs.get(key) or "").strip()
        if value:
            return value
    return None


def extract_user_id(attrs: Dict[str, str]) -> Optional[str]:
    return first_present(attrs, USER_ATTR_KEYS)


def extract_team_id(attrs: Dict[str, str]) -> Optional[str]:
    return first_present(attrs, TEAM_ATTR_KEYS)


# ---------------------------------------------------------------------------
# Numeric re-parsing
# ---------------------------------------------------------------------------


def parse_float(value: Any) -> Optional[float]:
    """Coerce *value* to a finite float, or ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (ValueError, TypeError):
        return None
    if not math.isfinite(result):
        return None
    return result


def parse_int(value: Any) -> Optional[int]:
    """Coerce *value* to an int, or ``None``.

    Accepts ints, integral floats and decimal strings (OTLP encodes 64-bit
    integers as strings in JSON).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        value = text
    number = parse_float(value)
    if number is None or not number.is_integer():
        return None
    return int(number)
