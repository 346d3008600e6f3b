"""Form sources and submission sinks.

The storage-backed pair is what the service itself uses. The HTTP pair talks
to a running crmforms API and is what a remote renderer (or the CLI) uses.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import httpx

from crmforms.descriptors import Form, form_from_payload, form_from_record
from crmforms.errors import FormNotFound, SubmissionRejected, TransportError
from crmforms.protocols import Storage, SubmissionReceipt
from crmforms.ratelimit import SubmissionRateLimiter
from crmforms.schema import synthesize_schema
from crmforms.utils import new_ulid, now_utc, parse_dt
from crmforms.webhook import notify_submission, wants_webhook

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Form not found"
CLOSED_MESSAGE = "This form is not accepting responses"
RATE_LIMITED_MESSAGE = "Too many submissions, please try again later"
INVALID_MESSAGE = "Please correct the highlighted fields"
TRANSPORT_MESSAGE = "There was an error submitting the form. Please try again."


class StorageFormSource:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def fetch_form(self, form_id: str) -> Form:
        record = self._storage.forms.get_form(form_id)
        if not record:
            raise FormNotFound(form_id)
        return form_from_record(record)


class StorageSubmissionSink:
    """Validates a payload against the stored form and records it."""

    def __init__(
        self,
        storage: Storage,
        limiter: SubmissionRateLimiter | None = None,
        webhook_timeout: float = 10.0,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage = storage
        self._limiter = limiter
        self._webhook_timeout = webhook_timeout
        self._webhook_transport = webhook_transport
        self._webhooks: set[asyncio.Task] = set()

    async def wait_webhooks(self) -> None:
        """Wait for webhook deliveries that are still running."""
        if self._webhooks:
            await asyncio.wait(set(self._webhooks))

    async def submit(
        self,
        form_id: str,
        data: Mapping[str, Any],
        source_info: Mapping[str, Any] | None = None,
    ) -> SubmissionReceipt:
        record = self._storage.forms.get_form(form_id)
        if not record:
            raise SubmissionRejected("not_found", NOT_FOUND_MESSAGE)
        form = form_from_record(record)
        if not form.is_open:
            raise SubmissionRejected("form_closed", CLOSED_MESSAGE)

        result = synthesize_schema(form.fields).validate(data)
        if not result.ok:
            raise SubmissionRejected("validation", INVALID_MESSAGE, dict(result.errors))
        if self._limiter is not None and not self._limiter.allow(form.id):
            logger.warning("Rate limit reached for form %s", form.id)
            raise SubmissionRejected("rate_limited", RATE_LIMITED_MESSAGE)

        submission = {
            "id": new_ulid(),
            "form_id": form.id,
            "data": dict(result.values),
            "source_info": dict(source_info or {}),
            "created_at": now_utc(),
        }
        self._storage.submissions.create_submission(submission)
        logger.info("Stored submission %s for form %s", submission["id"], form.id)

        if wants_webhook(record):
            # The stored row is the commit point; delivery is not awaited here.
            self._notify(record, submission)

        return SubmissionReceipt(submission_id=submission["id"], created_at=submission["created_at"])

    def _notify(self, record: dict[str, Any], submission: dict[str, Any]) -> None:
        task = asyncio.create_task(
            notify_submission(
                record,
                submission,
                timeout=self._webhook_timeout,
                transport=self._webhook_transport,
            )
        )
        self._webhooks.add(task)
        task.add_done_callback(self._webhooks.discard)


def _error_detail(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, dict) else {}


class HTTPFormSource:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def fetch_form(self, form_id: str) -> Form:
        url = f"{self._base_url}/api/forms/{form_id}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransportError(f"Could not load form: {exc}") from exc
        if response.status_code == 404:
            raise FormNotFound(form_id)
        if response.is_error:
            raise TransportError(f"Could not load form (HTTP {response.status_code})")
        try:
            return form_from_payload(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("Form definition response was not understood") from exc


class HTTPSubmissionSink:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def submit(
        self,
        form_id: str,
        data: Mapping[str, Any],
        source_info: Mapping[str, Any] | None = None,
    ) -> SubmissionReceipt:
        envelope = {"formId": form_id, "data": dict(data), "sourceInfo": dict(source_info or {})}
        url = f"{self._base_url}/api/form-submissions"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=envelope)
        except httpx.HTTPError as exc:
            logger.warning("Submission transport failed for form %s: %s", form_id, exc)
            raise TransportError(TRANSPORT_MESSAGE) from exc

        if response.is_error:
            detail = _error_detail(response)
            if detail.get("reason"):
                raise SubmissionRejected(
                    str(detail["reason"]),
                    str(detail.get("message") or TRANSPORT_MESSAGE),
                    detail.get("errors") or {},
                )
            raise TransportError(TRANSPORT_MESSAGE)

        try:
            body = response.json()
            return SubmissionReceipt(
                submission_id=str(body["id"]),
                created_at=parse_dt(body.get("createdAt")),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Unreadable receipt for form %s (HTTP %s)", form_id, response.status_code)
            raise TransportError(TRANSPORT_MESSAGE) from exc
