"""
Cleaning and validation of coffee documents before they are stored.

Unknown fields are always preserved so older and newer clients can share
the same collection.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from datetime import datetime, timezone
from typing import Any

DEFAULT_PROCESS = "unknown"

# Order matters: the first entry contained in a free-text value wins.
VALID_PROCESSES = (
    "washed",
    "natural",
    "honey",
    "anaerobic natural",
    "anaerobic washed",
    "anaerobic",
    "wet hulled",
    "semi-washed",
    "pulped natural",
    "carbonic maceration",
    "unknown",
)

TEXT_FIELD_LIMITS = {
    "name": 200,
    "origin": 200,
    "cultivar": 200,
    "roaster": 200,
    "roastery": 200,
    "tastingNotes": 500,
}

ALTITUDE_MAX_LENGTH = 50

FEEDBACK_KEYS = ("bitterness", "sweetness", "acidity", "body")
FEEDBACK_VALUES = ("low", "balanced", "high")

MAX_HISTORY_ENTRIES = 30
MAX_TIMESTAMP_LENGTH = 50
HISTORY_TEXT_LIMITS = {
    "previousGrind": 100,
    "newGrind": 100,
    "previousTemp": 50,
    "newTemp": 50,
}
HISTORY_FLAGS = ("customTempApplied", "resetToInitial")

FINGERPRINT_FIELDS = ("name", "origin", "roaster", "roastery", "addedDate")
# JSON.stringify writes integral numbers at or above this in exponent form.
JS_EXPONENT_THRESHOLD = 1e21

_TAG_RE = re.compile(r"<[^>]*>")
_ENTITY_RE = re.compile(r"&[^;]+;")
_NOT_ALTITUDE_RE = re.compile(r"[^0-9\-\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        # 1500.0 is sent by JS clients as 1500.
        return str(int(value))
    return str(value)


def strip_html(value: Any) -> str:
    """Remove tag-like and entity-like substrings until nothing changes."""
    if not isinstance(value, str):
        return ""
    previous = None
    result = value
    while result != previous:
        previous = result
        result = _ENTITY_RE.sub("", _TAG_RE.sub("", result))
    return result


def truncate_string(value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        return ""
    return value[:max_length]


def clean_altitude(value: Any) -> str:
    """Keep digits, hyphens and spaces, so "1200-1800 masl" becomes "1200-1800"."""
    if not value or not (isinstance(value, str) or _is_number(value)):
        return ""
    cleaned = _NOT_ALTITUDE_RE.sub("", strip_html(_to_text(value)))
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return truncate_string(cleaned, ALTITUDE_MAX_LENGTH)


def validate_process(value: Any) -> str:
    if not value or not isinstance(value, str):
        return DEFAULT_PROCESS

    cleaned = strip_html(value.lower().strip()).strip()
    if cleaned in VALID_PROCESSES:
        return cleaned

    # "honey process" -> "honey"
    for process in VALID_PROCESSES:
        if process in cleaned:
            return process
    return DEFAULT_PROCESS


def normalize_feedback(feedback: Any) -> Any:
    """Restrict known taste ratings to low/balanced/high.

    Unknown keys are kept for backwards compatibility; anything that is not
    a mapping is returned untouched.
    """
    if not isinstance(feedback, dict):
        return feedback

    normalized = {}
    for key, value in feedback.items():
        if key in FEEDBACK_KEYS:
            if isinstance(value, str):
                rating = value.lower().strip()
                if rating in FEEDBACK_VALUES:
                    normalized[key] = rating
            continue
        normalized[key] = value
    return normalized


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value or len(value) > MAX_TIMESTAMP_LENGTH:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        return None


def to_iso_timestamp(value: datetime) -> str:
    """Format as ``2025-01-01T00:00:00.000Z``, the shape browsers produce."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _normalize_history_entry(entry: Any) -> dict | None:
    if not isinstance(entry, dict):
        return None
    timestamp = _parse_timestamp(entry.get("timestamp"))
    if timestamp is None:
        return None

    normalized: dict[str, Any] = {"timestamp": to_iso_timestamp(timestamp)}
    for key, limit in HISTORY_TEXT_LIMITS.items():
        value = entry.get(key)
        if isinstance(value, str):
            normalized[key] = value[:limit]
    delta = entry.get("grindOffsetDelta")
    if _is_number(delta) and math.isfinite(delta):
        normalized["grindOffsetDelta"] = delta
    for key in HISTORY_FLAGS:
        if isinstance(entry.get(key), bool):
            normalized[key] = entry[key]
    return normalized


def normalize_feedback_history(history: Any) -> Any:
    """Keep the newest entries with a valid timestamp and known fields only."""
    if not isinstance(history, list):
        return history
    entries = (_normalize_history_entry(e) for e in history[-MAX_HISTORY_ENTRIES:])
    return [entry for entry in entries if entry is not None]


def sanitize_coffee_data(coffee: Any) -> dict:
    if not isinstance(coffee, dict):
        return {}

    sanitized = dict(coffee)

    for field, max_length in TEXT_FIELD_LIMITS.items():
        value = coffee.get(field)
        if value is not None:
            sanitized[field] = truncate_string(strip_html(_to_text(value)), max_length)

    if "process" in coffee:
        sanitized["process"] = validate_process(coffee["process"])
    if "altitude" in coffee:
        sanitized["altitude"] = clean_altitude(coffee["altitude"])
    if isinstance(coffee.get("feedback"), dict):
        sanitized["feedback"] = normalize_feedback(coffee["feedback"])
    if isinstance(coffee.get("feedbackHistory"), list):
        sanitized["feedbackHistory"] = normalize_feedback_history(
            coffee["feedbackHistory"]
        )

    # addedDate, id, savedAt, createdAt, updatedAt and any field added by
    # newer clients are carried over unchanged.
    return sanitized


def _js_json_value(value: Any) -> Any:
    """Shape numbers the way JSON.stringify writes them.

    Integral floats lose their ``.0`` and NaN/Infinity become null. Floats
    from 1e21 up keep Python's form; browsers switch to exponent notation.
    """
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer() and abs(value) < JS_EXPONENT_THRESHOLD:
            return int(value)
        return value
    if isinstance(value, list):
        return [_js_json_value(item) for item in value]
    if isinstance(value, dict):
        return {key: _js_json_value(item) for key, item in value.items()}
    return value


def stable_coffee_uid(coffee: Any) -> str:
    """Return the key a coffee is stored under.

    A client id wins. Otherwise the key is the SHA-1 of the compact JSON of
    the identifying fields in fixed order, so re-uploading the same coffee
    without an id lands on the same row.
    """
    if not isinstance(coffee, dict):
        coffee = {}

    coffee_id = coffee.get("id")
    if isinstance(coffee_id, str) or _is_number(coffee_id):
        uid = _to_text(coffee_id).strip()
        if uid:
            return uid

    fingerprint = {
        key: _js_json_value(coffee[key]) for key in FINGERPRINT_FIELDS if key in coffee
    }
    payload = json.dumps(fingerprint, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()
