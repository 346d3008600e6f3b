from __future__ import annotations

import csv
import io
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from jsonschema import Draft7Validator

from crmforms.config import FORM_STATUSES
from crmforms.descriptors import descriptor_from_raw, parse_fields
from crmforms.errors import SubmissionRejected
from crmforms.filters import apply_filters, csv_headers_and_rows, decode_cursor, encode_cursor, paginate
from crmforms.schema import synthesize_schema
from crmforms.utils import new_ulid, now_utc, to_iso
from crmforms.webhook import is_valid_webhook_url

router = APIRouter()

SUBMISSION_ENVELOPE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "formId": {"type": ["string", "integer"]},
        "data": {"type": "object"},
        "sourceInfo": {"type": ["object", "null"]},
    },
    "required": ["formId", "data"],
}
_envelope_validator = Draft7Validator(SUBMISSION_ENVELOPE_SCHEMA)

REJECTION_STATUS = {
    "validation": 400,
    "not_found": 404,
    "form_closed": 409,
    "rate_limited": 429,
}


def sanitize_form_output(form: dict[str, Any]) -> dict[str, Any]:
    created_at = form.get("created_at")
    updated_at = form.get("updated_at")
    return {
        "id": form["id"],
        "name": form.get("name", ""),
        "description": form.get("description", ""),
        "status": form.get("status") or "inactive",
        "fields": form.get("fields", []),
        "list_id": form.get("list_id"),
        "webhook_url": form.get("webhook_url", ""),
        "webhook_on_submit": bool(form.get("webhook_on_submit")),
        "created_at": to_iso(created_at) if created_at else None,
        "updated_at": to_iso(updated_at) if updated_at else None,
    }


def sanitize_submission_output(submission: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": submission["id"],
        "form_id": submission["form_id"],
        "data": submission.get("data", {}),
        "source_info": submission.get("source_info", {}),
        "created_at": to_iso(submission["created_at"]),
    }


def _get_form_or_404(request: Request, form_id: str) -> dict[str, Any]:
    form = request.app.state.storage.forms.get_form(form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form


def _form_fields(form: dict[str, Any]) -> list[Any]:
    return [d for d in (descriptor_from_raw(raw) for raw in form.get("fields", [])) if d]


def _checked_fields(raw_fields: Any) -> list[dict[str, Any]]:
    fields, errors = parse_fields(raw_fields)
    if errors:
        raise HTTPException(
            status_code=400, detail={"message": "Invalid form data", "errors": errors}
        )
    return fields


def _checked_webhook_url(payload: dict[str, Any]) -> str:
    webhook_url = str(payload.get("webhook_url", "")).strip()
    if webhook_url and not is_valid_webhook_url(webhook_url):
        raise HTTPException(status_code=400, detail="webhook_url is not a valid http(s) URL")
    return webhook_url


def _checked_status(value: Any) -> str:
    status = str(value or "").strip()
    if status not in FORM_STATUSES:
        raise HTTPException(status_code=400, detail="status must be 'active' or 'inactive'")
    return status


def _checked_list_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise HTTPException(status_code=400, detail="list_id must be a string or an integer")
    return str(value).strip() or None


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be an object")
    return payload


def embed_code(request: Request, form_id: str) -> str:
    url = str(request.url_for("embed_form", form_id=form_id))
    return f'<iframe src="{url}" width="100%" height="600" frameborder="0"></iframe>'


def request_source_info(request: Request, provided: Any = None) -> dict[str, Any]:
    info: dict[str, Any] = dict(provided) if isinstance(provided, dict) else {}
    info.setdefault("referrer", request.headers.get("referer", ""))
    info.setdefault("userAgent", request.headers.get("user-agent", ""))
    info.setdefault("timestamp", to_iso(now_utc()))
    info["ip"] = request.client.host if request.client else ""
    return info


@router.get("/api/forms", tags=["api/forms"])
async def api_list_forms(request: Request) -> JSONResponse:
    storage = request.app.state.storage
    items = []
    for form in storage.forms.list_forms():
        item = sanitize_form_output(form)
        item["field_count"] = len(item["fields"])
        item["submission_count"] = storage.submissions.count_for_form(form["id"])
        item["embed_code"] = embed_code(request, form["id"])
        items.append(item)
    return JSONResponse(items)


@router.post("/api/forms", tags=["api/forms"])
async def api_create_form(request: Request) -> JSONResponse:
    storage = request.app.state.storage
    payload = await _json_object(request)
    name = str(payload.get("name", "")).strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    fields = _checked_fields(payload.get("fields"))

    form_id = new_ulid()
    now = now_utc()
    storage.forms.create_form(
        {
            "id": form_id,
            "name": name,
            "description": str(payload.get("description") or "").strip(),
            "status": _checked_status(payload.get("status", "active")),
            "fields": fields,
            "list_id": _checked_list_id(payload.get("list_id", payload.get("listId"))),
            "webhook_url": _checked_webhook_url(payload),
            "webhook_on_submit": bool(payload.get("webhook_on_submit")),
            "created_at": now,
            "updated_at": now,
        }
    )
    form = storage.forms.get_form(form_id)
    return JSONResponse(sanitize_form_output(form or {"id": form_id}), status_code=201)


@router.get("/api/forms/{form_id}", tags=["api/forms"])
async def api_get_form(request: Request, form_id: str) -> JSONResponse:
    return JSONResponse(sanitize_form_output(_get_form_or_404(request, form_id)))


@router.put("/api/forms/{form_id}", tags=["api/forms"])
async def api_update_form(request: Request, form_id: str) -> JSONResponse:
    storage = request.app.state.storage
    _get_form_or_404(request, form_id)
    payload = await _json_object(request)
    updates: dict[str, Any] = {}
    if "name" in payload:
        name = str(payload.get("name", "")).strip()
        if not name:
            raise HTTPException(status_code=400, detail="name is required")
        updates["name"] = name
    if "description" in payload:
        updates["description"] = str(payload.get("description") or "").strip()
    if "fields" in payload:
        updates["fields"] = _checked_fields(payload.get("fields"))
    if "status" in payload:
        updates["status"] = _checked_status(payload.get("status"))
    if "list_id" in payload or "listId" in payload:
        updates["list_id"] = _checked_list_id(payload.get("list_id", payload.get("listId")))
    if "webhook_url" in payload:
        updates["webhook_url"] = _checked_webhook_url(payload)
    if "webhook_on_submit" in payload:
        updates["webhook_on_submit"] = bool(payload.get("webhook_on_submit"))
    updates["updated_at"] = now_utc()
    updated = storage.forms.update_form(form_id, updates)
    return JSONResponse(sanitize_form_output(updated))


@router.delete("/api/forms/{form_id}", tags=["api/forms"])
async def api_delete_form(request: Request, form_id: str) -> JSONResponse:
    storage = request.app.state.storage
    _get_form_or_404(request, form_id)
    removed = storage.submissions.delete_for_form(form_id)
    storage.forms.delete_form(form_id)
    return JSONResponse({"deleted": form_id, "submissions_deleted": removed})


@router.post("/api/forms/{form_id}/status", tags=["api/forms"])
async def api_set_form_status(request: Request, form_id: str) -> JSONResponse:
    storage = request.app.state.storage
    _get_form_or_404(request, form_id)
    payload = await _json_object(request)
    status = _checked_status(payload.get("status"))
    storage.forms.set_status(form_id, status)
    return JSONResponse(sanitize_form_output(storage.forms.get_form(form_id) or {"id": form_id}))


@router.get("/api/forms/{form_id}/schema", tags=["api/forms"])
async def api_form_schema(request: Request, form_id: str) -> JSONResponse:
    form = _get_form_or_404(request, form_id)
    return JSONResponse(synthesize_schema(form.get("fields", [])).to_json_schema())


@router.post("/api/form-submissions", tags=["api/submissions"])
async def api_submit_form(request: Request) -> JSONResponse:
    try:
        envelope = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"reason": "invalid_request", "message": "Request body must be JSON"},
        )
    problems = sorted(_envelope_validator.iter_errors(envelope), key=lambda err: list(err.path))
    if problems:
        raise HTTPException(
            status_code=400,
            detail={
                "reason": "invalid_request",
                "message": "Invalid submission envelope",
                "errors": {"/".join(str(p) for p in err.path) or "$": err.message for err in problems},
            },
        )

    sink = request.app.state.sink
    source_info = request_source_info(request, envelope.get("sourceInfo"))
    try:
        receipt = await sink.submit(str(envelope["formId"]), envelope["data"], source_info)
    except SubmissionRejected as exc:
        raise HTTPException(
            status_code=REJECTION_STATUS.get(exc.reason, 400),
            detail={"reason": exc.reason, "message": exc.message, "errors": exc.errors},
        )
    return JSONResponse(
        {"id": receipt.submission_id, "createdAt": to_iso(receipt.created_at)},
        status_code=201,
    )


@router.get("/api/forms/{form_id}/submissions", tags=["api/submissions"])
async def api_list_submissions(request: Request, form_id: str) -> JSONResponse:
    storage = request.app.state.storage
    form = _get_form_or_404(request, form_id)
    submissions = storage.submissions.list_submissions(form_id)
    filtered = apply_filters(submissions, _form_fields(form), dict(request.query_params))

    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        raise HTTPException(status_code=400, detail="limit must be an integer")
    limit = max(1, min(limit, 500))

    cursor = None
    cursor_raw = request.query_params.get("cursor")
    if cursor_raw:
        cursor = decode_cursor(cursor_raw)
        if cursor is None:
            raise HTTPException(status_code=400, detail="cursor is invalid")

    page_items = paginate(filtered, cursor, limit)
    headers: dict[str, str] = {}
    if len(page_items) == limit:
        last = page_items[-1]
        headers["X-Next-Cursor"] = encode_cursor(last["created_at"], last["id"])
    return JSONResponse(
        [sanitize_submission_output(item) for item in page_items], headers=headers
    )


@router.get("/api/forms/{form_id}/submissions/export", tags=["api/submissions"])
async def api_export_submissions(request: Request, form_id: str) -> PlainTextResponse:
    storage = request.app.state.storage
    form = _get_form_or_404(request, form_id)
    fields = _form_fields(form)
    submissions = apply_filters(
        storage.submissions.list_submissions(form_id), fields, dict(request.query_params)
    )
    headers, rows = csv_headers_and_rows(fields, submissions)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(headers)
    writer.writerows(rows)

    filename = f"form-{form_id}-submissions-{now_utc().strftime('%Y-%m-%d')}.csv"
    return PlainTextResponse(
        output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.delete("/api/submissions/{submission_id}", tags=["api/submissions"])
async def api_delete_submission(request: Request, submission_id: str) -> JSONResponse:
    storage = request.app.state.storage
    if not storage.submissions.get_submission(submission_id):
        raise HTTPException(status_code=404, detail="Submission not found")
    storage.submissions.delete_submission(submission_id)
    return JSONResponse({"deleted": submission_id})


@router.get("/healthz", tags=["system"])
async def healthz() -> JSONResponse:
    return JSONResponse({"status": "ok"})
