"""
clients/local_session_store.py — Device-local session persistence.

Holds at most one record, `{pin, participantId, participantName,
participantColor, isHost}`, replaced wholesale on every save and removed on
leave, end and reset. load() returns the snake_case form or None.

A record that cannot be read back raises RESTORE_FAILED; the lifecycle
purges it and starts a fresh session.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from marshmallow import ValidationError

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.schemas.session_schema import LocalSessionSchema

logger = logging.getLogger(__name__)

_schema = LocalSessionSchema()


def _restore_failed(reason: str) -> AppError:
    return AppError(
        ErrorCode.RESTORE_FAILED,
        f"Saved session could not be read: {reason}",
        500,
    )


class InMemoryLocalSessionStore:

    def __init__(self, initial: dict | None = None) -> None:
        self._raw: dict | None = _schema.dump(initial) if initial else None

    @classmethod
    def from_raw(cls, raw: dict) -> "InMemoryLocalSessionStore":
        """Seeds the store with an already-serialised (possibly stale) record."""
        store = cls()
        store._raw = raw
        return store

    def load(self) -> dict | None:
        if self._raw is None:
            return None
        try:
            return _schema.load(self._raw)
        except ValidationError as exc:
            raise _restore_failed(str(exc.messages)) from exc

    def save(self, session: dict) -> None:
        self._raw = _schema.dump(session)

    def clear(self) -> None:
        self._raw = None

    @property
    def raw(self) -> dict | None:
        """The stored wire record, for inspection."""
        return self._raw


class JsonFileLocalSessionStore:
    """Keeps the session record in a small JSON file, written atomically."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)

    @classmethod
    def from_config(cls, config) -> "JsonFileLocalSessionStore":
        return cls(config.LOCAL_SESSION_PATH)

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return _schema.load(raw)
        except (OSError, ValueError) as exc:
            raise _restore_failed(str(exc)) from exc
        except ValidationError as exc:
            raise _restore_failed(str(exc.messages)) from exc

    def save(self, session: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(_schema.dump(session)), encoding="utf-8")
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("local_session: cleared %s", self.path)
