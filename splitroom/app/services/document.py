"""
services/document.py — Construction and wire conversion of Split Documents.

In memory a document is a plain dict:

    {"items": [...], "users": [...], "host_id": str, "status": SplitStatus}

Every mutation in the live-split core works on a copy and returns a new
document; a document handed out by the sync engine is never edited in place.
"""

from __future__ import annotations

import copy

from marshmallow import ValidationError

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitStatus
from splitroom.app.schemas.split_schema import SplitDocumentSchema

_schema = SplitDocumentSchema()


def empty_document(host_id: str = "", status: SplitStatus = SplitStatus.WAITING) -> dict:
    return {"items": [], "users": [], "host_id": host_id, "status": status}


def copy_document(document: dict) -> dict:
    return copy.deepcopy(document)


def document_from_wire(payload: dict) -> dict:
    """
    Loads a camelCase document into its in-memory form.

    Raises AppError(INVALID_FIELD, 400) when the payload violates the
    document rules; the first offending field is reported.
    """
    try:
        return _schema.load(payload or {})
    except ValidationError as exc:
        field, message = _first_error(exc.messages)
        raise AppError(ErrorCode.INVALID_FIELD, message, 400, field=field) from exc


def document_to_wire(document: dict) -> dict:
    return _schema.dump(document)


def _first_error(messages) -> tuple[str | None, str]:
    if isinstance(messages, dict):
        for field_name, errors in messages.items():
            if isinstance(errors, list) and errors:
                return field_name, str(errors[0])
            if isinstance(errors, dict):
                _, nested = _first_error(errors)
                return field_name, nested
            return field_name, str(errors)
    if isinstance(messages, list) and messages:
        return None, str(messages[0])
    return None, "Invalid document."
