from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Sequence

from crmforms.config import (
    CHOICE_TYPES,
    FIELD_ID_PATTERN,
    FIELD_TYPES,
    FORM_STATUSES,
    TEXT_FALLBACK_TYPE,
)
from crmforms.utils import generate_field_id, parse_dt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldOption:
    value: str
    label: str

    def to_dict(self) -> dict[str, str]:
        return {"value": self.value, "label": self.label}


@dataclass(frozen=True)
class FieldDescriptor:
    id: str
    type: str
    label: str
    required: bool = False
    options: tuple[FieldOption, ...] = ()
    placeholder: str = ""
    help_text: str = ""

    @property
    def is_choice(self) -> bool:
        return self.type in CHOICE_TYPES

    @property
    def option_values(self) -> tuple[str, ...]:
        return tuple(option.value for option in self.options)

    def default_value(self) -> bool | str:
        return False if self.type == "checkbox" else ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "required": self.required,
        }
        if self.is_choice:
            payload["options"] = [option.to_dict() for option in self.options]
        if self.placeholder:
            payload["placeholder"] = self.placeholder
        if self.help_text:
            payload["helpText"] = self.help_text
        return payload


@dataclass(frozen=True)
class Form:
    """A form definition as handed to a rendering session.

    ``fields`` holds the descriptors exactly as authored; malformed entries
    are only weeded out when a schema is synthesized from them.
    """

    id: str
    name: str
    description: str = ""
    fields: tuple[Any, ...] = ()
    status: str = "active"
    list_id: str | None = None
    webhook_url: str = ""
    webhook_on_submit: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "active"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "on", "yes"}
    return bool(value)


def _descriptor_id(raw: Mapping[str, Any]) -> str:
    value = raw.get("id")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return ""
    return str(value).strip()


def _normalize_type(value: Any) -> str:
    field_type = _as_text(value).lower()
    return field_type if field_type in FIELD_TYPES else TEXT_FALLBACK_TYPE


def _option_from_raw(raw: Any) -> FieldOption | None:
    if isinstance(raw, Mapping):
        value = _as_text(raw.get("value"))
        if not value:
            return None
        return FieldOption(value=value, label=_as_text(raw.get("label")) or value)
    if isinstance(raw, (str, int, float)) and not isinstance(raw, bool):
        value = _as_text(raw)
        return FieldOption(value=value, label=value) if value else None
    return None


def parse_options(raw_options: Any) -> tuple[FieldOption, ...]:
    if not isinstance(raw_options, Sequence) or isinstance(raw_options, (str, bytes)):
        return ()
    options: list[FieldOption] = []
    seen: set[str] = set()
    for raw in raw_options:
        option = _option_from_raw(raw)
        if option is None or option.value in seen:
            continue
        seen.add(option.value)
        options.append(option)
    return tuple(options)


def descriptor_from_raw(raw: Any) -> FieldDescriptor | None:
    """Build a descriptor from authored data, or return None if it is unusable.

    Only a non-mapping or a missing id makes a descriptor unusable. Unknown
    types are handled as plain text.
    """
    if not isinstance(raw, Mapping):
        return None
    field_id = _descriptor_id(raw)
    if not field_id:
        return None
    field_type = _normalize_type(raw.get("type"))
    if field_type == TEXT_FALLBACK_TYPE and _as_text(raw.get("type")).lower() not in {"", "text"}:
        logger.debug("Field %s has unknown type %r, treating as text", field_id, raw.get("type"))
    options = parse_options(raw.get("options")) if field_type in CHOICE_TYPES else ()
    return FieldDescriptor(
        id=field_id,
        type=field_type,
        label=_as_text(raw.get("label")) or field_id,
        required=_as_flag(raw.get("required")),
        options=options,
        placeholder=_as_text(raw.get("placeholder")),
        help_text=_as_text(raw.get("helpText", raw.get("help_text"))),
    )


def parse_fields(raw_fields: Any) -> tuple[list[dict[str, Any]], list[str]]:
    """Check authored field definitions before they are stored.

    Returns the normalized descriptors and a list of problems, one message
    per problem. Missing ids are generated.
    """
    errors: list[str] = []
    if not isinstance(raw_fields, list):
        return [], ["fields must be a list"]

    seen_ids: set[str] = set()
    fields: list[dict[str, Any]] = []
    for index, raw in enumerate(raw_fields, start=1):
        loc = f"Field {index}"
        if not isinstance(raw, Mapping):
            errors.append(f"{loc}: must be an object")
            continue

        field_id = _descriptor_id(raw)
        if not field_id:
            field_id = generate_field_id(seen_ids)
        if not FIELD_ID_PATTERN.match(field_id):
            errors.append(
                f"{loc}: id must start with a letter and contain only letters, digits, '_' or '-'"
            )
        if field_id in seen_ids:
            errors.append(f"{loc}: duplicate id ({field_id})")
        else:
            seen_ids.add(field_id)

        label = _as_text(raw.get("label"))
        if not label:
            errors.append(f"{loc}: label is required")

        raw_type = _as_text(raw.get("type")).lower() or TEXT_FALLBACK_TYPE
        if raw_type not in FIELD_TYPES:
            errors.append(f"{loc}: unknown type ({raw_type})")

        options: tuple[FieldOption, ...] = ()
        if raw_type in CHOICE_TYPES:
            raw_options = raw.get("options") or []
            options = parse_options(raw_options)
            if not options:
                errors.append(f"{loc}: {raw_type} needs at least one option")
            elif isinstance(raw_options, list) and len(options) != len(raw_options):
                errors.append(f"{loc}: option values must be unique and non-empty")

        descriptor = FieldDescriptor(
            id=field_id,
            type=raw_type if raw_type in FIELD_TYPES else TEXT_FALLBACK_TYPE,
            label=label,
            required=_as_flag(raw.get("required")),
            options=options,
            placeholder=_as_text(raw.get("placeholder")),
            help_text=_as_text(raw.get("helpText", raw.get("help_text"))),
        )
        fields.append(descriptor.to_dict())

    if not fields and not errors:
        errors.append("A form needs at least one field")

    return fields, errors


def form_from_record(record: Mapping[str, Any]) -> Form:
    status = str(record.get("status") or "inactive")
    raw_fields = record.get("fields") or []
    return Form(
        id=str(record["id"]),
        name=str(record.get("name") or ""),
        description=str(record.get("description") or ""),
        fields=tuple(raw_fields) if isinstance(raw_fields, list) else (),
        status=status if status in FORM_STATUSES else "inactive",
        list_id=str(record["list_id"]) if record.get("list_id") not in (None, "") else None,
        webhook_url=str(record.get("webhook_url") or ""),
        webhook_on_submit=bool(record.get("webhook_on_submit")),
        created_at=parse_dt(record["created_at"]) if record.get("created_at") else None,
        updated_at=parse_dt(record["updated_at"]) if record.get("updated_at") else None,
    )


def form_from_payload(payload: Mapping[str, Any]) -> Form:
    """Build a form from the JSON the API serves (camelCase or snake_case keys)."""
    record = dict(payload)
    if "listId" in record and "list_id" not in record:
        record["list_id"] = record["listId"]
    if "id" not in record:
        raise ValueError("form payload has no id")
    return form_from_record(record)
