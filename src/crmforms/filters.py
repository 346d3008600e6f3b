from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from crmforms.descriptors import FieldDescriptor

CSV_BASE_HEADERS = ["Submission ID", "Date", "IP Address"]


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_query_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def value_to_text(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(value_to_text(item) for item in value if item is not None)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _searchable_values(data: Mapping[str, Any]) -> Iterable[str]:
    for value in data.values():
        text = value_to_text(value)
        if text:
            yield text


def apply_filters(
    submissions: list[dict[str, Any]],
    fields: Sequence[FieldDescriptor],
    query_params: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Filter submissions by free text, submission date and per-field values.

    Per-field filters use ``f_<field id>``; select/radio/checkbox match
    exactly, everything else by case-insensitive substring.
    """
    q = str(query_params.get("q", "")).strip().lower()
    from_dt = parse_query_datetime(query_params.get("submitted_from"))
    to_dt = parse_query_datetime(query_params.get("submitted_to"))

    field_filters: list[tuple[FieldDescriptor, str]] = []
    for descriptor in fields:
        raw = str(query_params.get(f"f_{descriptor.id}", "")).strip()
        if raw:
            field_filters.append((descriptor, raw))

    filtered: list[dict[str, Any]] = []
    for submission in submissions:
        created_at = submission.get("created_at")
        if isinstance(created_at, datetime) and (from_dt or to_dt):
            created_value = ensure_aware(created_at)
            if from_dt and created_value < ensure_aware(from_dt):
                continue
            if to_dt and created_value > ensure_aware(to_dt):
                continue

        data = submission.get("data", {})
        if q and q not in " ".join(_searchable_values(data)).lower():
            continue

        ok = True
        for descriptor, expected in field_filters:
            actual = value_to_text(data.get(descriptor.id))
            if descriptor.type == "checkbox":
                matched = actual == ("true" if expected.lower() in {"1", "true", "on", "yes"} else "false")
            elif descriptor.is_choice:
                matched = actual == expected
            else:
                matched = expected.lower() in actual.lower()
            if not matched:
                ok = False
                break
        if ok:
            filtered.append(submission)
    return filtered


def encode_cursor(created_at: datetime, submission_id: str) -> str:
    value = f"{ensure_aware(created_at).isoformat()}|{submission_id}"
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("utf-8")


def decode_cursor(cursor: str) -> tuple[datetime, str] | None:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        created_at_raw, submission_id = raw.split("|", 1)
        created_at = datetime.fromisoformat(created_at_raw)
    except ValueError:
        return None
    return ensure_aware(created_at), submission_id


def paginate(
    submissions: list[dict[str, Any]], cursor: tuple[datetime, str] | None, limit: int
) -> list[dict[str, Any]]:
    """Keyset pagination over submissions sorted newest first."""
    items = sorted(
        submissions,
        key=lambda item: (ensure_aware(item["created_at"]), item["id"]),
        reverse=True,
    )
    if cursor:
        cursor_dt, cursor_id = cursor
        items = [
            item
            for item in items
            if (ensure_aware(item["created_at"]), item["id"]) < (cursor_dt, cursor_id)
        ]
    return items[:limit]


def csv_headers_and_rows(
    fields: Sequence[FieldDescriptor],
    submissions: list[dict[str, Any]],
) -> tuple[list[str], list[list[str]]]:
    columns = [descriptor.id for descriptor in fields]
    known = set(columns)
    extra: set[str] = set()
    for submission in submissions:
        extra.update(key for key in submission.get("data", {}) if key not in known)
    columns.extend(sorted(extra))

    headers = CSV_BASE_HEADERS + columns
    rows: list[list[str]] = []
    for submission in submissions:
        data = submission.get("data", {})
        source_info = submission.get("source_info") or {}
        created_at = submission.get("created_at")
        row = [
            str(submission.get("id", "")),
            ensure_aware(created_at).strftime("%Y-%m-%d %H:%M:%S") if isinstance(created_at, datetime) else "",
            str(source_info.get("ip") or "Unknown"),
        ]
        row.extend(value_to_text(data.get(column)) for column in columns)
        rows.append(row)
    return headers, rows
