"""
services/record_service.py — Split record persistence for the record-store API.

The store is deliberately dumb:
  - create_record fails on an existing PIN (PIN_COLLISION 409); the client
    picks another PIN and tries again.
  - overwrite_record replaces the whole document. No merge, no version
    check: the last accepted write wins.
  - Host privilege and status transitions are NOT enforced here. Any
    holder of the PIN may write; the client core applies those rules.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitRecord
from splitroom.app.services.document import document_to_wire


# ── Private helpers ────────────────────────────────────────────────────────

def _find_record(pin: str, session: Session) -> SplitRecord | None:
    return session.execute(
        select(SplitRecord).where(SplitRecord.pin == pin)
    ).scalar_one_or_none()


def _get_record_or_404(pin: str, session: Session) -> SplitRecord:
    """Returns the SplitRecord or raises SPLIT_NOT_FOUND (404)."""
    record = _find_record(pin, session)
    if record is None:
        raise AppError(
            ErrorCode.SPLIT_NOT_FOUND,
            f"Split {pin} does not exist.",
            404,
        )
    return record


def _collision(pin: str) -> AppError:
    return AppError(
        ErrorCode.PIN_COLLISION,
        f"A split with PIN {pin} already exists.",
        409,
        field="pin",
    )


def _build_record_dict(record: SplitRecord) -> dict:
    """Serialises a SplitRecord. `data` stays in wire (camelCase) form."""
    return {
        "pin": record.pin,
        "data": record.data,
        "revision": record.revision,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


# ── Public service functions ───────────────────────────────────────────────

def create_record(pin: str, document: dict, session: Session) -> dict:
    """
    Stores a new split under `pin`.

    Args:
        document: in-memory (snake_case) document, already validated by
                  SplitDocumentSchema in the route.

    Raises:
      AppError(PIN_COLLISION, 409) — a split already uses this PIN
    """
    if _find_record(pin, session) is not None:
        raise _collision(pin)

    record = SplitRecord(pin=pin, data=document_to_wire(document), revision=1)
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same PIN.
        session.rollback()
        raise _collision(pin) from exc

    session.refresh(record)
    return _build_record_dict(record)


def get_record(pin: str, session: Session) -> dict:
    """
    Raises:
      AppError(SPLIT_NOT_FOUND, 404)
    """
    return _build_record_dict(_get_record_or_404(pin, session))


def overwrite_record(
        pin: str,
        document: dict,
        session: Session,
        origin: dict | None = None,
) -> dict:
    """
    Replaces the whole document stored under `pin`.

    Args:
        origin: {"client_id", "seq"} of the writer, when it sent one. Kept on
                the row and echoed in the change notification.

    Raises:
      AppError(SPLIT_NOT_FOUND, 404)
    """
    record = _get_record_or_404(pin, session)

    record.data = document_to_wire(document)
    record.revision = record.revision + 1
    record.last_writer_id = origin["client_id"] if origin else None
    record.last_write_seq = origin["seq"] if origin else None
    record.updated_at = datetime.now(timezone.utc)
    session.flush()

    return _build_record_dict(record)
