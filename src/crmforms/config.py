from __future__ import annotations

import os
import re
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

FIELD_TYPES = ("text", "email", "number", "textarea", "select", "radio", "checkbox")
CHOICE_TYPES = {"select", "radio"}
TEXT_FALLBACK_TYPE = "text"
FIELD_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")
FORM_STATUSES = {"active", "inactive"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


class Settings:
    def __init__(self) -> None:
        self.storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        self.sqlite_path = Path(os.getenv("SQLITE_PATH", "./data/crmforms.db"))
        self.json_path = Path(os.getenv("JSON_PATH", "./data/crmforms.json"))
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = _env_int("PORT", 8000)
        self.log_level = os.getenv("CRMFORMS_LOG_LEVEL", "INFO").upper()
        self.http_timeout = _env_float("CRMFORMS_HTTP_TIMEOUT", 10.0)
        self.rate_limit = _env_int("CRMFORMS_RATE_LIMIT", 30)
        self.api_url = os.getenv("CRMFORMS_API_URL", "http://127.0.0.1:8000")


def ensure_dirs(settings: Settings) -> None:
    if settings.storage_backend == "json":
        settings.json_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
