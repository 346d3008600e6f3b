from __future__ import annotations

import json
from typing import Any

import markupsafe
from fastapi import FastAPI
from fastapi.templating import Jinja2Templates

from crmforms.config import BASE_DIR, Settings
from crmforms.ratelimit import SubmissionRateLimiter
from crmforms.routes.api import router as api_router
from crmforms.routes.public import router as public_router
from crmforms.storage import init_storage
from crmforms.transports import StorageSubmissionSink


def _tojson_attr(value: Any) -> markupsafe.Markup:
    """Escape a value as JSON so it can sit inside an HTML attribute."""
    return markupsafe.Markup(markupsafe.escape(json.dumps(value, ensure_ascii=False)))


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    storage = init_storage(settings)

    app = FastAPI(
        title="crmforms",
        openapi_tags=[
            {"name": "public", "description": "Embeddable forms (HTML)"},
            {"name": "api/forms", "description": "REST API: forms"},
            {"name": "api/submissions", "description": "REST API: submissions"},
            {"name": "system", "description": "System"},
        ],
    )

    app.state.settings = settings
    app.state.storage = storage
    app.state.sink = StorageSubmissionSink(
        storage,
        limiter=SubmissionRateLimiter(settings.rate_limit),
        webhook_timeout=settings.http_timeout,
    )

    templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
    templates.env.filters["tojson_attr"] = _tojson_attr
    app.state.templates = templates

    app.include_router(public_router)
    app.include_router(api_router)

    return app
