from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from crmforms.routes.api import request_source_info
from crmforms.session import FormSession, SessionState, collect_form_values
from crmforms.transports import StorageFormSource

router = APIRouter()


def _new_session(request: Request, form_id: str) -> FormSession:
    storage = request.app.state.storage
    return FormSession(form_id, StorageFormSource(storage), request.app.state.sink)


def _not_found(request: Request) -> HTMLResponse:
    templates = request.app.state.templates
    return templates.TemplateResponse(request, "form_not_found.html", {}, status_code=404)


def _render_form(request: Request, session: FormSession, status_code: int = 200) -> HTMLResponse:
    templates = request.app.state.templates
    return templates.TemplateResponse(
        request,
        "form_embed.html",
        {
            "form": session.form,
            "widgets": session.widgets(),
            "banner": session.banner,
            "inactive": not session.is_open,
        },
        status_code=status_code,
    )


@router.get("/forms/embed/{form_id}", response_class=HTMLResponse, tags=["public"])
async def embed_form(request: Request, form_id: str) -> HTMLResponse:
    session = _new_session(request, form_id)
    if await session.load() == SessionState.ERROR:
        return _not_found(request)
    return _render_form(request, session)


@router.post("/forms/embed/{form_id}", response_class=HTMLResponse, tags=["public"])
async def submit_embed_form(request: Request, form_id: str) -> HTMLResponse:
    session = _new_session(request, form_id)
    if await session.load() == SessionState.ERROR:
        return _not_found(request)

    assert session.schema is not None
    form_data = await request.form()
    session.update(collect_form_values(session.schema, form_data))
    outcome = await session.submit(request_source_info(request))
    if outcome.ok:
        templates = request.app.state.templates
        return templates.TemplateResponse(
            request,
            "submission_done.html",
            {"form": session.form},
        )
    return _render_form(request, session, status_code=400)
