from datetime import datetime, timezone

import httpx
import pytest

from crmforms.webhook import build_webhook_payload, is_valid_webhook_url, notify_submission, wants_webhook

pytestmark = pytest.mark.anyio

FORM = {
    "id": "form-1",
    "name": "Contact",
    "list_id": "leads",
    "webhook_url": "https://hooks.example.com/crm",
    "webhook_on_submit": True,
}
SUBMISSION = {
    "id": "sub-1",
    "data": {"email": "ada@example.com"},
    "source_info": {"referrer": "https://acme.test/"},
    "created_at": datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
}


def test_webhook_url_checks():
    assert is_valid_webhook_url("https://hooks.example.com/x")
    assert not is_valid_webhook_url("ftp://hooks.example.com/x")
    assert not is_valid_webhook_url("https://")
    assert not wants_webhook({**FORM, "webhook_on_submit": False})
    assert not wants_webhook({**FORM, "webhook_url": ""})


def test_payload_shape():
    payload = build_webhook_payload(FORM, SUBMISSION)
    assert payload["form"] == {"id": "form-1", "name": "Contact", "list_id": "leads"}
    assert payload["submission"]["referrer"] == "https://acme.test/"
    assert payload["submission"]["created_at"] == "2026-01-02T03:04:05+00:00"


async def test_notify_sends_user_agent():
    agents = []

    def handler(request: httpx.Request) -> httpx.Response:
        agents.append(request.headers["user-agent"])
        return httpx.Response(204)

    assert await notify_submission(FORM, SUBMISSION, transport=httpx.MockTransport(handler))
    assert agents == ["crmforms-webhook/1"]


async def test_notify_reports_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    assert not await notify_submission(FORM, SUBMISSION, transport=httpx.MockTransport(handler))
