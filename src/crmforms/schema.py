from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Sequence, Union

from crmforms.descriptors import FieldDescriptor, descriptor_from_raw

logger = logging.getLogger(__name__)

# Accepted submission values. Which one a field holds is decided by its descriptor.
FieldValue = Union[str, bool, list[str]]

REQUIRED_MESSAGE = "This field is required"
TEXT_MESSAGE = "Please enter text"
EMAIL_MESSAGE = "Please enter a valid email address"
NUMBER_MESSAGE = "Please enter a valid number"
CHOICE_MESSAGE = "Please select one of the available options"
BOOL_MESSAGE = "Please answer yes or no"

EMAIL_PATTERN = (
    r"^(?!\.)(?!.*\.\.)[A-Za-z0-9_'+\-.]*[A-Za-z0-9_+\-]"
    r"@(?:[A-Za-z0-9][A-Za-z0-9\-]*\.)+[A-Za-z]{2,}$"
)
NUMBER_PATTERN = r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$"

_EMAIL_RE = re.compile(EMAIL_PATTERN)
_NUMBER_RE = re.compile(NUMBER_PATTERN)
_TRUE_STRINGS = {"1", "true", "on", "yes"}
_FALSE_STRINGS = {"", "0", "false", "off", "no"}


def _optional_pattern(pattern: str) -> str:
    return f"^$|{pattern}"


@dataclass(frozen=True)
class FieldRule:
    field: FieldDescriptor
    kind: ClassVar[str] = "string"

    @property
    def field_id(self) -> str:
        return self.field.id

    @property
    def required(self) -> bool:
        return self.field.required

    def check(self, value: Any) -> tuple[FieldValue | None, str | None]:
        if value is None:
            value = ""
        if not isinstance(value, str):
            return None, self.type_message()
        if not value.strip():
            if self.required:
                return None, REQUIRED_MESSAGE
            return value, None
        return self.check_filled(value)

    def check_filled(self, value: str) -> tuple[FieldValue | None, str | None]:
        return value, None

    def type_message(self) -> str:
        return TEXT_MESSAGE

    def base_property(self) -> dict[str, Any]:
        return {"type": "string"}

    def to_property(self) -> dict[str, Any]:
        prop = self.base_property()
        prop["title"] = self.field.label
        prop["x-field-type"] = self.field.type
        if self.field.help_text:
            prop["description"] = self.field.help_text
        if self.field.placeholder:
            prop["x-placeholder"] = self.field.placeholder
        return prop


@dataclass(frozen=True)
class StringRule(FieldRule):
    kind: ClassVar[str] = "string"

    def base_property(self) -> dict[str, Any]:
        prop: dict[str, Any] = {"type": "string"}
        if self.required:
            prop["pattern"] = r"\S"
        return prop


@dataclass(frozen=True)
class EmailRule(FieldRule):
    kind: ClassVar[str] = "email"

    def check_filled(self, value: str) -> tuple[FieldValue | None, str | None]:
        candidate = value.strip()
        if not _EMAIL_RE.match(candidate):
            return None, EMAIL_MESSAGE
        return candidate, None

    def type_message(self) -> str:
        return EMAIL_MESSAGE

    def base_property(self) -> dict[str, Any]:
        pattern = EMAIL_PATTERN if self.required else _optional_pattern(EMAIL_PATTERN)
        return {"type": "string", "pattern": pattern}


@dataclass(frozen=True)
class NumberRule(FieldRule):
    """Numbers are validated as numbers but kept as the submitted text."""

    kind: ClassVar[str] = "number"

    def check(self, value: Any) -> tuple[FieldValue | None, str | None]:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        return super().check(value)

    def check_filled(self, value: str) -> tuple[FieldValue | None, str | None]:
        candidate = value.strip()
        if not _NUMBER_RE.match(candidate):
            return None, NUMBER_MESSAGE
        return candidate, None

    def type_message(self) -> str:
        return NUMBER_MESSAGE

    def base_property(self) -> dict[str, Any]:
        pattern = NUMBER_PATTERN if self.required else _optional_pattern(NUMBER_PATTERN)
        return {"type": ["string", "number"], "pattern": pattern}


@dataclass(frozen=True)
class EnumRule(FieldRule):
    kind: ClassVar[str] = "enum"

    def check_filled(self, value: str) -> tuple[FieldValue | None, str | None]:
        if value not in self.field.option_values:
            return None, CHOICE_MESSAGE
        return value, None

    def type_message(self) -> str:
        return CHOICE_MESSAGE

    def base_property(self) -> dict[str, Any]:
        values = list(self.field.option_values)
        if not self.required:
            values.append("")
        return {"type": "string", "enum": values}


@dataclass(frozen=True)
class BoolRule(FieldRule):
    """Checkboxes never block a submission: False is a valid answer."""

    kind: ClassVar[str] = "boolean"

    def check(self, value: Any) -> tuple[FieldValue | None, str | None]:
        if value is None:
            return False, None
        if isinstance(value, bool):
            return value, None
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True, None
            if lowered in _FALSE_STRINGS:
                return False, None
        return None, BOOL_MESSAGE

    def base_property(self) -> dict[str, Any]:
        return {"type": "boolean"}


RULES_BY_TYPE: dict[str, type[FieldRule]] = {
    "text": StringRule,
    "textarea": StringRule,
    "email": EmailRule,
    "number": NumberRule,
    "select": EnumRule,
    "radio": EnumRule,
    "checkbox": BoolRule,
}


def rule_for(descriptor: FieldDescriptor) -> FieldRule:
    return RULES_BY_TYPE.get(descriptor.type, StringRule)(descriptor)


@dataclass(frozen=True)
class ValidationResult:
    values: dict[str, FieldValue]
    errors: dict[str, str]

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ValidationSchema:
    rules: dict[str, FieldRule] = field(default_factory=dict)
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.rules)

    def __contains__(self, field_id: object) -> bool:
        return field_id in self.rules

    @property
    def descriptors(self) -> list[FieldDescriptor]:
        return [rule.field for rule in self.rules.values()]

    def defaults(self) -> dict[str, FieldValue]:
        return {field_id: rule.field.default_value() for field_id, rule in self.rules.items()}

    def validate(self, payload: Mapping[str, Any] | None) -> ValidationResult:
        data: Mapping[str, Any] = payload if isinstance(payload, Mapping) else {}
        values: dict[str, FieldValue] = {}
        errors: dict[str, str] = {}
        for field_id, rule in self.rules.items():
            coerced, error = rule.check(data.get(field_id))
            if error is not None:
                errors[field_id] = error
            else:
                values[field_id] = coerced
        return ValidationResult(values=values, errors=errors)

    def to_json_schema(self) -> dict[str, Any]:
        properties = {field_id: rule.to_property() for field_id, rule in self.rules.items()}
        required = [
            field_id
            for field_id, rule in self.rules.items()
            if rule.required and rule.kind != "boolean"
        ]
        schema: dict[str, Any] = {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "properties": properties,
            "x-field-order": list(properties.keys()),
        }
        if required:
            schema["required"] = required
        return schema


def synthesize_schema(fields: Sequence[Any]) -> ValidationSchema:
    """Derive a validation schema from authored field descriptors.

    Never raises. Entries that are not objects, lack an id, or repeat an id
    already seen are left out of the schema and logged.
    """
    rules: dict[str, FieldRule] = {}
    skipped = 0
    for index, raw in enumerate(fields or ()):
        descriptor = raw if isinstance(raw, FieldDescriptor) else descriptor_from_raw(raw)
        if descriptor is None:
            skipped += 1
            logger.warning("Skipping malformed field descriptor at position %d", index)
            continue
        if descriptor.id in rules:
            skipped += 1
            logger.warning("Skipping field descriptor with duplicate id %s", descriptor.id)
            continue
        if descriptor.is_choice and not descriptor.options:
            logger.warning("Field %s has no options; every answer will be rejected", descriptor.id)
        rules[descriptor.id] = rule_for(descriptor)
    return ValidationSchema(rules=rules, skipped=skipped)
