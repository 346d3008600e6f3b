"""Outbound notification when a form receives a submission.

Delivery is best effort: a failing endpoint never turns an accepted
submission into an error.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlsplit

import httpx

from crmforms.utils import to_iso

logger = logging.getLogger(__name__)

SUBMIT_EVENT = "submission.created"
USER_AGENT = "crmforms-webhook/1"


def is_valid_webhook_url(url: str) -> bool:
    if not url:
        return False
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def build_webhook_payload(form: dict[str, Any], submission: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": SUBMIT_EVENT,
        "form": {"id": form.get("id"), "name": form.get("name"), "list_id": form.get("list_id")},
        "submission": {
            "id": submission.get("id"),
            "data": submission.get("data", {}),
            "referrer": (submission.get("source_info") or {}).get("referrer", ""),
        },
    }
    created_at = submission.get("created_at")
    if created_at is not None:
        payload["submission"]["created_at"] = to_iso(created_at)
    return payload


def wants_webhook(form: dict[str, Any]) -> bool:
    return bool(form.get("webhook_on_submit")) and is_valid_webhook_url(form.get("webhook_url") or "")


async def notify_submission(
    form: dict[str, Any],
    submission: dict[str, Any],
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """POST the submission to the form's webhook; True when it was delivered."""
    if not wants_webhook(form):
        return False

    url = form["webhook_url"]
    try:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, headers={"User-Agent": USER_AGENT}
        ) as client:
            response = await client.post(url, json=build_webhook_payload(form, submission))
            response.raise_for_status()
    except httpx.HTTPError:
        logger.exception("Webhook for form %s failed: %s", form.get("id"), url)
        return False
    logger.info("Webhook for form %s delivered to %s", form.get("id"), url)
    return True
