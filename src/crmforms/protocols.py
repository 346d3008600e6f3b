from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol

from crmforms.descriptors import Form


@dataclass(frozen=True)
class SubmissionReceipt:
    submission_id: str
    created_at: datetime


class FormSource(Protocol):
    async def fetch_form(self, form_id: str) -> Form: ...


class SubmissionSink(Protocol):
    async def submit(
        self,
        form_id: str,
        data: Mapping[str, Any],
        source_info: Mapping[str, Any] | None = None,
    ) -> SubmissionReceipt: ...


class FormRepository(Protocol):
    def list_forms(self) -> list[dict[str, Any]]: ...

    def get_form(self, form_id: str) -> dict[str, Any] | None: ...

    def create_form(self, form: dict[str, Any]) -> None: ...

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]: ...

    def set_status(self, form_id: str, status: str) -> None: ...

    def delete_form(self, form_id: str) -> None: ...


class SubmissionRepository(Protocol):
    def list_submissions(self, form_id: str) -> list[dict[str, Any]]: ...

    def get_submission(self, submission_id: str) -> dict[str, Any] | None: ...

    def create_submission(self, submission: dict[str, Any]) -> None: ...

    def count_for_form(self, form_id: str) -> int: ...

    def delete_submission(self, submission_id: str) -> None: ...

    def delete_for_form(self, form_id: str) -> int: ...


class Storage(Protocol):
    forms: FormRepository
    submissions: SubmissionRepository
