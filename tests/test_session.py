import asyncio

import pytest

from crmforms.descriptors import Form
from crmforms.errors import FormNotFound, SessionStateError, SubmissionRejected, TransportError
from crmforms.session import (
    CANCELLED_MESSAGE,
    CLOSED_FORM_MESSAGE,
    IN_FLIGHT_MESSAGE,
    FormSession,
    SessionState,
    collect_form_values,
)
from crmforms.transports import TRANSPORT_MESSAGE

from conftest import CONTACT_FIELDS, FakeSink, FakeSource

pytestmark = pytest.mark.anyio


def _form(fields, status="active"):
    return Form(id="form-1", name="Newsletter", fields=tuple(fields), status=status)


async def _ready_session(fields, sink=None, status="active"):
    session = FormSession("form-1", FakeSource(_form(fields, status)), sink or FakeSink())
    assert await session.load() == SessionState.READY
    return session


async def test_load_initialises_defaults():
    session = await _ready_session(CONTACT_FIELDS)
    assert session.values == {
        "name": "",
        "email": "",
        "employees": "",
        "interest": "",
        "subscribe": False,
    }
    assert session.banner is None
    assert session.errors == {}


@pytest.mark.parametrize("error", [FormNotFound("form-1"), TransportError("connection refused")])
async def test_failed_load_is_terminal(error):
    session = FormSession("form-1", FakeSource(error=error), FakeSink())
    assert await session.load() == SessionState.ERROR
    with pytest.raises(SessionStateError):
        session.widgets()
    with pytest.raises(SessionStateError):
        await session.submit()
    with pytest.raises(SessionStateError):
        session.set_value("email", "a@b.com")
    with pytest.raises(SessionStateError):
        await session.load()


async def test_email_scenario():
    sink = FakeSink()
    session = await _ready_session([{"id": "email", "type": "email", "required": True}], sink)

    session.set_value("email", "not-an-email")
    outcome = await session.submit()
    assert outcome.ok is False
    assert outcome.errors == {"email": "Please enter a valid email address"}
    assert session.state == SessionState.READY
    assert sink.calls == []

    session.set_value("email", "a@b.com")
    assert session.errors == {}
    outcome = await session.submit()
    assert outcome.ok is True
    assert outcome.receipt.submission_id == "sub-1"
    assert session.state == SessionState.SUBMITTED
    assert sink.calls == [("form-1", {"email": "a@b.com"}, None)]


async def test_required_checkbox_false_is_submitted():
    sink = FakeSink()
    session = await _ready_session([{"id": "subscribe", "type": "checkbox", "required": True}], sink)
    session.set_value("subscribe", False)
    outcome = await session.submit()
    assert outcome.ok
    assert sink.calls[0][1] == {"subscribe": False}


async def test_numbers_are_sent_as_entered():
    sink = FakeSink()
    session = await _ready_session([{"id": "seats", "type": "number", "required": True}], sink)
    session.set_value("seats", "12")
    await session.submit({"referrer": "https://example.com"})
    assert sink.calls == [("form-1", {"seats": "12"}, {"referrer": "https://example.com"})]


async def test_transport_failure_returns_to_ready_with_values_intact():
    sink = FakeSink(error=TransportError("Service unavailable, try again"))
    session = await _ready_session(CONTACT_FIELDS, sink)
    session.update({"name": "Ada", "email": "ada@example.com", "interest": "crm", "subscribe": True})

    outcome = await session.submit()
    assert outcome.ok is False
    assert outcome.message == "Service unavailable, try again"
    assert session.state == SessionState.READY
    assert session.banner == "Service unavailable, try again"
    assert session.values["name"] == "Ada"
    assert session.values["email"] == "ada@example.com"
    assert session.values["subscribe"] is True


async def test_rejection_surfaces_message_and_field_errors():
    sink = FakeSink(
        error=SubmissionRejected(
            "validation", "Please correct the highlighted fields", {"email": "Taken", "ghost": "x"}
        )
    )
    session = await _ready_session(CONTACT_FIELDS, sink)
    session.update({"name": "Ada", "email": "ada@example.com"})
    outcome = await session.submit()
    assert outcome.message == "Please correct the highlighted fields"
    assert session.errors == {"email": "Taken"}
    assert session.state == SessionState.READY


async def test_submit_another_resets_to_defaults():
    session = await _ready_session(CONTACT_FIELDS)
    session.update({"name": "Ada", "email": "ada@example.com", "subscribe": True})
    assert (await session.submit()).ok

    with pytest.raises(SessionStateError):
        session.set_value("name", "Bob")

    session.submit_another()
    assert session.state == SessionState.READY
    assert session.values == session.schema.defaults()
    assert session.receipt is None


async def test_submit_another_only_after_submitted():
    session = await _ready_session(CONTACT_FIELDS)
    with pytest.raises(SessionStateError):
        session.submit_another()


async def test_unknown_field_is_rejected():
    session = await _ready_session(CONTACT_FIELDS)
    with pytest.raises(KeyError):
        session.set_value("nope", "x")


async def test_double_submit_is_gated():
    gate = asyncio.Event()
    sink = FakeSink(gate=gate)
    session = await _ready_session([{"id": "name", "type": "text"}], sink)
    session.set_value("name", "Ada")

    first = asyncio.create_task(session.submit())
    while session.state != SessionState.SUBMITTING:
        await asyncio.sleep(0)

    second = await session.submit()
    assert second.ok is False
    assert second.message == IN_FLIGHT_MESSAGE

    gate.set()
    outcome = await first
    assert outcome.ok
    assert len(sink.calls) == 1


async def test_close_cancels_submission_in_flight():
    gate = asyncio.Event()
    sink = FakeSink(gate=gate)
    session = await _ready_session([{"id": "name", "type": "text"}], sink)

    pending = asyncio.create_task(session.submit())
    while session.state != SessionState.SUBMITTING:
        await asyncio.sleep(0)

    await session.close()
    outcome = await pending
    assert outcome.ok is False
    assert outcome.message == CANCELLED_MESSAGE
    assert session.state == SessionState.CLOSED
    assert sink.completed == 0

    with pytest.raises(SessionStateError):
        await session.submit()


async def test_close_after_sink_finished_keeps_the_receipt():
    gate = asyncio.Event()
    sink = FakeSink(gate=gate)
    session = await _ready_session([{"id": "name", "type": "text"}], sink)

    pending = asyncio.create_task(session.submit())
    while session.state != SessionState.SUBMITTING:
        await asyncio.sleep(0)
    gate.set()
    while not session._task.done():
        await asyncio.sleep(0)

    await session.close()
    outcome = await pending
    assert outcome.ok
    assert outcome.receipt is not None
    assert session.state == SessionState.CLOSED
    assert sink.completed == 1


class _BrokenSink(FakeSink):
    async def submit(self, form_id, data, source_info=None):
        self.calls.append((form_id, dict(data), source_info))
        raise RuntimeError("sink bug")


async def test_unexpected_sink_error_returns_to_ready():
    sink = _BrokenSink()
    session = await _ready_session([{"id": "name", "type": "text"}], sink)
    session.set_value("name", "Ada")

    outcome = await session.submit()
    assert outcome.ok is False
    assert outcome.message == TRANSPORT_MESSAGE
    assert session.state == SessionState.READY
    assert session.values == {"name": "Ada"}

    again = await session.submit()
    assert again.message != IN_FLIGHT_MESSAGE
    assert len(sink.calls) == 2


async def test_closed_form_loads_with_banner():
    session = await _ready_session(CONTACT_FIELDS, status="inactive")
    assert session.is_open is False
    assert session.banner == CLOSED_FORM_MESSAGE


async def test_widgets_reflect_field_types_and_state():
    fields = CONTACT_FIELDS + [
        {"id": "notes", "type": "textarea", "label": "Notes", "helpText": "Optional"},
        {"id": "size", "type": "radio", "label": "Size", "options": ["s", "m"]},
        {"id": "fax", "type": "fax", "label": "Fax"},
        {"label": "broken"},
    ]
    session = await _ready_session(fields)
    session.set_value("email", "bad")
    session.validate()

    widgets = {widget.field_id: widget for widget in session.widgets()}
    assert list(widgets) == ["name", "email", "employees", "interest", "subscribe", "notes", "size", "fax"]
    assert (widgets["email"].control, widgets["email"].input_type) == ("input", "email")
    assert widgets["email"].error == "Please enter a valid email address"
    assert widgets["email"].value == "bad"
    assert widgets["employees"].input_type == "number"
    assert widgets["interest"].control == "select"
    assert [o.value for o in widgets["interest"].options] == ["crm", "invoicing"]
    assert widgets["subscribe"].control == "checkbox"
    assert widgets["subscribe"].value is False
    assert widgets["notes"].control == "textarea"
    assert widgets["notes"].help_text == "Optional"
    assert widgets["size"].control == "radio"
    assert (widgets["fax"].control, widgets["fax"].input_type) == ("input", "text")


class _FormData(dict):
    def getlist(self, key):
        value = self.get(key)
        if value is None:
            return []
        return value if isinstance(value, list) else [value]


async def test_collect_form_values_from_html_post():
    session = await _ready_session(CONTACT_FIELDS)
    values = collect_form_values(session.schema, _FormData({"name": "Ada", "interest": ["crm", "invoicing"]}))
    assert values == {
        "name": "Ada",
        "email": "",
        "employees": "",
        "interest": ["crm", "invoicing"],
        "subscribe": False,
    }
    values = collect_form_values(session.schema, _FormData({"subscribe": "true"}))
    assert values["subscribe"] is True
