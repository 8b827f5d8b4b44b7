from __future__ import annotations

import json
from datetime import date, datetime, time

from app.portal.constants import FILE_TYPE_DISPLAY_NAMES


def parse_tags(raw: str | list | None) -> tuple[list[str], str | None]:
    """Parse tags from a JSON array string (or a comma list, or an already-decoded list)."""
    if raw is None:
        return [], None
    if isinstance(raw, list):
        value = raw
    else:
        raw = raw.strip()
        if not raw:
            return [], None
        if raw.startswith("["):
            try:
                value = json.loads(raw)
            except json.JSONDecodeError as e:
                return [], f"Tags JSON is invalid: {e}"
        else:
            value = raw.split(",")
    if not isinstance(value, list) or not all(isinstance(t, str) for t in value):
        return [], "Tags must be a JSON array of strings."
    out: list[str] = []
    for t in value:
        t = t.strip()
        if t and t not in out:
            out.append(t[:64])
    return out, None


def parse_date_bound(s: str | None, *, end: bool = False) -> datetime | None:
    """Parse YYYY-MM-DD (or full ISO datetime) into an inclusive range bound."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    if len(s) == 10:
        d = date.fromisoformat(s)
        return datetime.combine(d, time.max if end else time.min)
    return datetime.fromisoformat(s)


def file_type_display_name(mime_type: str | None) -> str:
    return FILE_TYPE_DISPLAY_NAMES.get(mime_type or "", "Unknown")


def format_file_size(num_bytes: int | None) -> str:
    n = num_bytes or 0
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    if n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    return f"{n / (1024 * 1024 * 1024):.1f} GB"
