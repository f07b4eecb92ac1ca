# triage_engine/helpers/coercion.py
"""Total coercion helpers for loosely-typed stored data.

Unlike request validation these helpers never raise: every function returns
the coerced value or the given fallback. Used by the config and rule
normalizers.
"""

import json
import math
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional


TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
FALSE_STRINGS = {"false", "0", "no", "n", "off"}


def ensure_string(value: Any, fallback: str = "") -> str:
    """Coerce value to a stripped string.

    Args:
        value: Raw value
        fallback: Returned for None and non-scalar values

    Returns:
        Stripped string (numbers and booleans are stringified)
    """
    if isinstance(value, str):
        return value.strip()
    if value is None:
        return fallback
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return fallback


def ensure_number(value: Any, fallback: Optional[float] = None) -> Optional[float]:
    """Coerce value to a finite number.

    Booleans are rejected, numeric strings are parsed.

    Returns:
        int/float or fallback
    """
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else fallback
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return fallback
        return parsed if math.isfinite(parsed) else fallback
    return fallback


def ensure_boolean(value: Any, fallback: bool = False) -> bool:
    """Coerce value to bool ("true"/"1"/"yes" etc. are accepted)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return fallback


def ensure_string_list(value: Any) -> List[str]:
    """Coerce value to a list of non-empty strings (scalars become one-element lists)."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    result = []
    for item in items:
        text = ensure_string(item)
        if text:
            result.append(text)
    return result


def sanitize_number(
    value: Any,
    fallback: float,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    round_value: bool = False,
) -> float:
    """Coerce, clamp and optionally round a numeric setting.

    Args:
        value: Raw value
        fallback: Used when value is not numeric
        min_val: Lower bound (optional)
        max_val: Upper bound (optional)
        round_value: Round to integer

    Returns:
        Sanitized number
    """
    result = ensure_number(value, fallback)
    if min_val is not None:
        result = max(min_val, result)
    if max_val is not None:
        result = min(max_val, result)
    if round_value:
        result = round(result)
    return result


def ensure_mapping(value: Any) -> Optional[Dict[str, Any]]:
    """Return value as dict; JSON object strings are decoded.

    Returns:
        dict or None if value is not a mapping
    """
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)):
        try:
            decoded = json.loads(value)
        except (ValueError, TypeError):
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp into an aware UTC datetime.

    Accepts datetime objects (naive = UTC) and ISO-8601 strings
    (a trailing "Z" is accepted).

    Returns:
        Aware datetime or None
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
