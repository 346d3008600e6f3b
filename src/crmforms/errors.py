from __future__ import annotations


class CRMFormsError(Exception):
    pass


class FormNotFound(CRMFormsError):
    def __init__(self, form_id: str) -> None:
        super().__init__(f"Form not found: {form_id}")
        self.form_id = form_id


class TransportError(CRMFormsError):
    """Network or server failure talking to a form source or submission sink."""


class SubmissionRejected(CRMFormsError):
    """The submission sink refused a payload.

    ``reason`` is one of ``validation``, ``form_closed``, ``not_found`` or
    ``rate_limited``. ``message`` is meant to be shown to the user verbatim.
    """

    def __init__(
        self,
        reason: str,
        message: str,
        errors: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.errors = errors or {}


class SessionStateError(CRMFormsError):
    pass
