"""TinyDB storage for single-process installs.

Every call opens the file under a FileLock so several workers can share it.
Datetimes are stored as ISO strings and parsed back on the way out.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from filelock import FileLock
from tinydb import Query, TinyDB
from tinydb.table import Table

from crmforms.utils import now_utc, parse_dt, to_iso

FORMS_TABLE = "forms"
SUBMISSIONS_TABLE = "submissions"
_DATE_KEYS = ("created_at", "updated_at")

_FORM_DEFAULTS: dict[str, Any] = {
    "name": "",
    "description": "",
    "status": "inactive",
    "fields": [],
    "list_id": None,
    "webhook_url": "",
    "webhook_on_submit": False,
}


def _serialize(values: dict[str, Any]) -> dict[str, Any]:
    return {
        key: to_iso(value) if isinstance(value, datetime) else value
        for key, value in values.items()
    }


def _deserialize(document: dict[str, Any]) -> dict[str, Any]:
    record = dict(document)
    for key in _DATE_KEYS:
        if key in record:
            record[key] = parse_dt(record[key])
    return record


class _TinyTable:
    def __init__(self, path: Path, lock: FileLock, name: str) -> None:
        self._path = path
        self._lock = lock
        self._name = name

    @contextmanager
    def _open(self) -> Iterator[Table]:
        with self._lock:
            db = TinyDB(self._path)
            try:
                yield db.table(self._name)
            finally:
                db.close()


class JSONFormRepo(_TinyTable):
    def __init__(self, path: Path, lock: FileLock) -> None:
        super().__init__(path, lock, FORMS_TABLE)

    @staticmethod
    def _to_form(document: dict[str, Any]) -> dict[str, Any]:
        form = {**_FORM_DEFAULTS, **_deserialize(document)}
        form["webhook_on_submit"] = bool(form["webhook_on_submit"])
        return form

    def list_forms(self) -> list[dict[str, Any]]:
        with self._open() as table:
            documents = table.all()
        forms = [self._to_form(doc) for doc in documents]
        forms.sort(key=lambda form: form["updated_at"], reverse=True)
        return forms

    def get_form(self, form_id: str) -> dict[str, Any] | None:
        with self._open() as table:
            document = table.get(Query().id == form_id)
        return self._to_form(document) if document else None

    def create_form(self, form: dict[str, Any]) -> None:
        now = now_utc()
        document = _serialize({"status": "active", "created_at": now, "updated_at": now, **form})
        with self._open() as table:
            table.insert(document)

    def update_form(self, form_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        changes = _serialize({key: value for key, value in updates.items() if key != "id"})
        with self._open() as table:
            if not table.update(changes, Query().id == form_id):
                raise KeyError(form_id)
            document = table.get(Query().id == form_id)
        return self._to_form(document)

    def set_status(self, form_id: str, status: str) -> None:
        self.update_form(form_id, {"status": status, "updated_at": now_utc()})

    def delete_form(self, form_id: str) -> None:
        with self._open() as table:
            table.remove(Query().id == form_id)


class JSONSubmissionRepo(_TinyTable):
    def __init__(self, path: Path, lock: FileLock) -> None:
        super().__init__(path, lock, SUBMISSIONS_TABLE)

    @staticmethod
    def _to_submission(document: dict[str, Any]) -> dict[str, Any]:
        submission = _deserialize(document)
        submission.setdefault("data", {})
        submission["source_info"] = submission.get("source_info") or {}
        return submission

    def list_submissions(self, form_id: str) -> list[dict[str, Any]]:
        with self._open() as table:
            documents = table.search(Query().form_id == form_id)
        submissions = [self._to_submission(doc) for doc in documents]
        submissions.sort(key=lambda item: (item["created_at"], item["id"]), reverse=True)
        return submissions

    def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        with self._open() as table:
            document = table.get(Query().id == submission_id)
        return self._to_submission(document) if document else None

    def create_submission(self, submission: dict[str, Any]) -> None:
        document = _serialize(
            {
                "id": submission["id"],
                "form_id": submission["form_id"],
                "data": submission["data"],
                "source_info": submission.get("source_info") or {},
                "created_at": submission["created_at"],
            }
        )
        with self._open() as table:
            table.insert(document)

    def count_for_form(self, form_id: str) -> int:
        with self._open() as table:
            return table.count(Query().form_id == form_id)

    def delete_submission(self, submission_id: str) -> None:
        with self._open() as table:
            table.remove(Query().id == submission_id)

    def delete_for_form(self, form_id: str) -> int:
        with self._open() as table:
            return len(table.remove(Query().form_id == form_id))


class JSONStorage:
    def __init__(self, path: Path) -> None:
        lock = FileLock(f"{path}.lock")
        self.forms = JSONFormRepo(path, lock)
        self.submissions = JSONSubmissionRepo(path, lock)
