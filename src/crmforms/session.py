from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from crmforms.descriptors import FieldOption, Form
from crmforms.errors import FormNotFound, SessionStateError, SubmissionRejected, TransportError
from crmforms.protocols import FormSource, SubmissionReceipt, SubmissionSink
from crmforms.schema import FieldValue, ValidationResult, ValidationSchema, synthesize_schema
from crmforms.transports import TRANSPORT_MESSAGE

logger = logging.getLogger(__name__)

CLOSED_FORM_MESSAGE = "This form is not accepting responses"
IN_FLIGHT_MESSAGE = "A submission is already in progress"
CANCELLED_MESSAGE = "The submission was cancelled"

_CONTROLS = {
    "text": "input",
    "email": "input",
    "number": "input",
    "textarea": "textarea",
    "select": "select",
    "radio": "radio",
    "checkbox": "checkbox",
}


class SessionState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class Widget:
    field_id: str
    control: str
    input_type: str
    label: str
    required: bool
    placeholder: str
    help_text: str
    options: tuple[FieldOption, ...]
    value: Any
    error: str | None


@dataclass(frozen=True)
class SubmitOutcome:
    state: SessionState
    ok: bool
    receipt: SubmissionReceipt | None = None
    errors: dict[str, str] = field(default_factory=dict)
    message: str | None = None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "on", "yes"}


def collect_form_values(schema: ValidationSchema, form_data: Any) -> dict[str, FieldValue]:
    """Read field values out of an HTML form post.

    Unchecked checkboxes are absent from a post, so every checkbox gets an
    explicit boolean. ``form_data`` needs ``get`` and ``getlist``.
    """
    values: dict[str, FieldValue] = {}
    for descriptor in schema.descriptors:
        if descriptor.type == "checkbox":
            values[descriptor.id] = _parse_bool(form_data.get(descriptor.id, False))
            continue
        items = [str(item) for item in form_data.getlist(descriptor.id)]
        if len(items) > 1:
            values[descriptor.id] = items
        else:
            values[descriptor.id] = items[0] if items else ""
    return values


class FormSession:
    """One user filling in one form.

    Loading → Ready → Submitting → Submitted, back to Ready on a failed
    submission or on ``submit_another``. A failed load ends in Error.
    """

    def __init__(self, form_id: str, source: FormSource, sink: SubmissionSink) -> None:
        self.form_id = form_id
        self._source = source
        self._sink = sink
        self.state = SessionState.LOADING
        self.form: Form | None = None
        self.schema: ValidationSchema | None = None
        self.values: dict[str, FieldValue] = {}
        self.errors: dict[str, str] = {}
        self.banner: str | None = None
        self.receipt: SubmissionReceipt | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self.form is not None and self.form.is_open

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(state.value for state in states)
            raise SessionStateError(f"Session is {self.state.value}; expected {allowed}")

    async def load(self) -> SessionState:
        self._require(SessionState.LOADING)
        try:
            form = await self._source.fetch_form(self.form_id)
        except (FormNotFound, TransportError) as exc:
            logger.info("Form %s could not be loaded: %s", self.form_id, exc)
            self.state = SessionState.ERROR
            self.banner = str(exc)
            return self.state

        self.form = form
        self.schema = synthesize_schema(form.fields)
        self.values = self.schema.defaults()
        self.banner = None if form.is_open else CLOSED_FORM_MESSAGE
        self.state = SessionState.READY
        logger.debug("Form %s ready with %d fields", self.form_id, len(self.schema))
        return self.state

    def set_value(self, field_id: str, value: FieldValue) -> None:
        self._require(SessionState.READY, SessionState.SUBMITTING)
        assert self.schema is not None
        if field_id not in self.schema:
            raise KeyError(field_id)
        self.values[field_id] = value
        self.errors.pop(field_id, None)

    def update(self, values: Mapping[str, FieldValue]) -> None:
        for field_id, value in values.items():
            self.set_value(field_id, value)

    def validate(self) -> ValidationResult:
        self._require(SessionState.READY, SessionState.SUBMITTING)
        assert self.schema is not None
        result = self.schema.validate(self.values)
        self.errors = dict(result.errors)
        return result

    async def submit(self, source_info: Mapping[str, Any] | None = None) -> SubmitOutcome:
        if self.state == SessionState.SUBMITTING:
            return SubmitOutcome(state=self.state, ok=False, message=IN_FLIGHT_MESSAGE)
        self._require(SessionState.READY)
        assert self.form is not None

        result = self.validate()
        if not result.ok:
            return SubmitOutcome(state=self.state, ok=False, errors=dict(result.errors))

        self.state = SessionState.SUBMITTING
        self.banner = None
        self._task = asyncio.create_task(
            self._sink.submit(self.form.id, dict(result.values), source_info)
        )
        try:
            receipt = await self._task
        except asyncio.CancelledError:
            if self.state != SessionState.CLOSED:
                self.state = SessionState.READY
                raise
            logger.info("Submission for form %s cancelled by session close", self.form_id)
            return SubmitOutcome(state=self.state, ok=False, message=CANCELLED_MESSAGE)
        except SubmissionRejected as exc:
            self._back_to_ready(exc.message)
            self.errors = {k: v for k, v in exc.errors.items() if k in self.values}
            logger.info("Submission for form %s rejected (%s)", self.form_id, exc.reason)
            return SubmitOutcome(
                state=self.state, ok=False, errors=dict(self.errors), message=exc.message
            )
        except TransportError as exc:
            self._back_to_ready(str(exc))
            logger.warning("Submission for form %s failed: %s", self.form_id, exc)
            return SubmitOutcome(state=self.state, ok=False, message=self.banner)
        except Exception:
            self._back_to_ready(TRANSPORT_MESSAGE)
            logger.exception("Submission for form %s failed unexpectedly", self.form_id)
            return SubmitOutcome(state=self.state, ok=False, message=self.banner)
        finally:
            self._task = None

        self.receipt = receipt
        if self.state != SessionState.CLOSED:
            self.state = SessionState.SUBMITTED
        return SubmitOutcome(state=self.state, ok=True, receipt=receipt)

    def _back_to_ready(self, message: str) -> None:
        if self.state != SessionState.CLOSED:
            self.state = SessionState.READY
        self.banner = message

    def submit_another(self) -> None:
        self._require(SessionState.SUBMITTED)
        assert self.schema is not None
        self.values = self.schema.defaults()
        self.errors = {}
        self.banner = None
        self.receipt = None
        self.state = SessionState.READY

    def widgets(self) -> list[Widget]:
        self._require(SessionState.READY, SessionState.SUBMITTING, SessionState.SUBMITTED)
        assert self.schema is not None
        widgets: list[Widget] = []
        for descriptor in self.schema.descriptors:
            control = _CONTROLS.get(descriptor.type, "input")
            widgets.append(
                Widget(
                    field_id=descriptor.id,
                    control=control,
                    input_type=descriptor.type if control == "input" else "",
                    label=descriptor.label,
                    required=descriptor.required,
                    placeholder=descriptor.placeholder,
                    help_text=descriptor.help_text,
                    options=descriptor.options,
                    value=self.values.get(descriptor.id, descriptor.default_value()),
                    error=self.errors.get(descriptor.id),
                )
            )
        return widgets

    async def close(self) -> None:
        """Tear the session down, cancelling a submission still in flight."""
        self.state = SessionState.CLOSED
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
