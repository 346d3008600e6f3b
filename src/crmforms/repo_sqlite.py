from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from crmforms.models import Base, FormModel, SubmissionModel
from crmforms.utils import dumps_json, loads_json, now_utc

logger = logging.getLogger(__name__)

# Form keys that are stored as-is on the row.
_PLAIN_FORM_COLUMNS = {"name", "description", "status", "list_id", "webhook_url", "created_at", "updated_at"}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands datetimes back without tzinfo.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _apply_form_values(row: FormModel, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if key == "fields":
            row.fields_json = dumps_json(value or [])
        elif key == "webhook_on_submit":
            row.webhook_on_submit = int(bool(value))
        elif key in _PLAIN_FORM_COLUMNS:
            setattr(row, key, value)


def form_row_to_dict(row: FormModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description or "",
        "status": row.status or "inactive",
        "fields": loads_json(row.fields_json) or [],
        "list_id": row.list_id,
        "webhook_url": row.webhook_url or "",
        "webhook_on_submit": bool(row.webhook_on_submit),
        "created_at": _aware(row.created_at),
        "updated_at": _aware(row.updated_at),
    }


def submission_row_to_dict(row: SubmissionModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "form_id": row.form_id,
        "data": loads_json(row.data_json) or {},
        "source_info": loads_json(row.source_info_json) or {},
        "created_at": _aware(row.created_at),
    }


class SQLiteFormRepo:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._Session = session_factory

    def _require(self, session: Session, form_id: str) -> FormModel:
        row = session.get(FormModel, form_id)
        if row is None:
            raise KeyError(form_id)
        return row

    def list_forms(self) -> list[dict[str, Any]]:
        stmt = select(FormModel).order_by(FormModel.updated_at.desc())
        with self._Session() as session:
            return [form_row_to_dict(row) for row in session.scalars(stmt)]

    def get_form(self, form_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(FormModel, form_id)
            return form_row_to_dict(row) if row else None

    def create_form(self, form: dict[str, Any]) -> None:
        row = FormModel(id=form["id"])
        _apply_form_values(row, {"status": "active", **form})
        with self._Session.begin() as session:
            session.add(row)

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        with self._Session.begin() as session:
            row = self._require(session, form_id)
            _apply_form_values(row, updates)
            session.flush()
            return form_row_to_dict(row)

    def set_status(self, form_id: str, status: str) -> None:
        with self._Session.begin() as session:
            row = self._require(session, form_id)
            row.status = status
            row.updated_at = now_utc()

    def delete_form(self, form_id: str) -> None:
        with self._Session.begin() as session:
            session.execute(delete(FormModel).where(FormModel.id == form_id))


class SQLiteSubmissionRepo:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._Session = session_factory

    def list_submissions(self, form_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(SubmissionModel)
            .where(SubmissionModel.form_id == form_id)
            .order_by(SubmissionModel.created_at.desc(), SubmissionModel.id.desc())
        )
        with self._Session() as session:
            return [submission_row_to_dict(row) for row in session.scalars(stmt)]

    def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        with self._Session() as session:
            row = session.get(SubmissionModel, submission_id)
            return submission_row_to_dict(row) if row else None

    def create_submission(self, submission: dict[str, Any]) -> None:
        row = SubmissionModel(
            id=submission["id"],
            form_id=submission["form_id"],
            data_json=dumps_json(submission["data"]),
            source_info_json=dumps_json(submission.get("source_info") or {}),
            created_at=submission["created_at"],
        )
        with self._Session.begin() as session:
            session.add(row)

    def count_for_form(self, form_id: str) -> int:
        stmt = select(func.count()).select_from(SubmissionModel).where(SubmissionModel.form_id == form_id)
        with self._Session() as session:
            return session.scalar(stmt) or 0

    def delete_submission(self, submission_id: str) -> None:
        with self._Session.begin() as session:
            session.execute(delete(SubmissionModel).where(SubmissionModel.id == submission_id))

    def delete_for_form(self, form_id: str) -> int:
        with self._Session.begin() as session:
            result = session.execute(
                delete(SubmissionModel).where(SubmissionModel.form_id == form_id)
            )
            return result.rowcount or 0


class SQLiteStorage:
    def __init__(self, db_path: Path) -> None:
        self._engine = create_engine(f"sqlite:///{db_path}")
        self._Session = sessionmaker(self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        logger.debug("SQLite schema ready at %s", db_path)
        self.forms = SQLiteFormRepo(self._Session)
        self.submissions = SQLiteSubmissionRepo(self._Session)
