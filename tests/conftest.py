from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest
from fastapi.testclient import TestClient

from crmforms.app import create_app
from crmforms.config import Settings
from crmforms.descriptors import Form
from crmforms.errors import FormNotFound
from crmforms.protocols import SubmissionReceipt
from crmforms.utils import now_utc

CONTACT_FIELDS = [
    {"id": "name", "type": "text", "label": "Name", "required": True},
    {"id": "email", "type": "email", "label": "Email", "required": True},
    {"id": "employees", "type": "number", "label": "Employees"},
    {
        "id": "interest",
        "type": "select",
        "label": "Interest",
        "options": [{"value": "crm", "label": "CRM"}, {"value": "invoicing", "label": "Invoicing"}],
    },
    {"id": "subscribe", "type": "checkbox", "label": "Subscribe", "required": True},
]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_settings(tmp_path: Any, backend: str = "sqlite") -> Settings:
    settings = Settings()
    settings.storage_backend = backend
    settings.sqlite_path = tmp_path / "crmforms.db"
    settings.json_path = tmp_path / "crmforms.json"
    settings.rate_limit = 0
    return settings


@pytest.fixture(params=["sqlite", "json"])
def settings(request: pytest.FixtureRequest, tmp_path: Any) -> Settings:
    return make_settings(tmp_path, request.param)


@pytest.fixture
def client(settings: Settings) -> TestClient:
    return TestClient(create_app(settings))


@pytest.fixture
def contact_form(client: TestClient) -> dict[str, Any]:
    response = client.post(
        "/api/forms",
        json={"name": "Contact us", "description": "We reply within a day", "fields": CONTACT_FIELDS},
    )
    assert response.status_code == 201
    return response.json()


class FakeSource:
    def __init__(self, form: Form | None = None, error: Exception | None = None) -> None:
        self.form = form
        self.error = error

    async def fetch_form(self, form_id: str) -> Form:
        if self.error is not None:
            raise self.error
        if self.form is None or self.form.id != form_id:
            raise FormNotFound(form_id)
        return self.form


class FakeSink:
    def __init__(self, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.error = error
        self.gate = gate
        self.calls: list[tuple[str, dict[str, Any], Mapping[str, Any] | None]] = []
        self.completed = 0

    async def submit(
        self,
        form_id: str,
        data: Mapping[str, Any],
        source_info: Mapping[str, Any] | None = None,
    ) -> SubmissionReceipt:
        self.calls.append((form_id, dict(data), source_info))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.completed += 1
        return SubmissionReceipt(submission_id=f"sub-{len(self.calls)}", created_at=now_utc())
