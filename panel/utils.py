# panel/utils.py
import re
from datetime import datetime, timezone
from typing import Any, Optional

import commentjson


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    SQLite hands back naive datetimes even for timezone-aware columns;
    everything the panel stores is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_json_blob(value: Any) -> Any:
    """
    Load a persisted JSON blob.

    JSONB columns come back as dicts already; older rows and some drivers hand
    back the serialized text instead, which is parsed as-is with commentjson.
    Raises ValueError when the text is not valid JSON.
    """
    if value is None:
        return None
    if not isinstance(value, (str, bytes)):
        return value

    text = value.decode("utf-8") if isinstance(value, bytes) else value
    if not text.strip():
        return None

    try:
        return commentjson.loads(text)
    except Exception as e:
        raise ValueError(f"load_json_blob: JSON parsing failed: {e}") from e


def humanize_field_name(name: str) -> str:
    """firstName / first_name / first-name -> First Name"""
    spaced = re.sub(r'([a-z0-9])([A-Z])', r'\1 \2', name)
    spaced = re.sub(r'[_\-.]+', ' ', spaced)
    words = [w for w in spaced.split(" ") if w]
    return " ".join(w[:1].upper() + w[1:] for w in words) or name
