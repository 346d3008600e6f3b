from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class FormModel(Base):
    """A form definition; the field list is kept as a JSON document."""

    __tablename__ = "forms"

    id = Column(String, primary_key=True)
    name = Column(String)
    description = Column(Text, default="")
    status = Column(String(16), default="active")
    fields_json = Column(Text, default="[]")
    list_id = Column(String, nullable=True)
    webhook_url = Column(Text, default="")
    webhook_on_submit = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), index=True)


class SubmissionModel(Base):
    """One stored submission. Values stay schema-less JSON."""

    __tablename__ = "form_submissions"

    id = Column(String, primary_key=True)
    form_id = Column(String, index=True)
    data_json = Column(Text)
    source_info_json = Column(Text, default="{}")
    created_at = Column(DateTime(timezone=True), index=True)
