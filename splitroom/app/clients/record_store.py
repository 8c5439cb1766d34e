"""
clients/record_store.py — Remote Record Store collaborators.

A record store holds one Split Document per PIN and offers four calls:

    create_record(pin, document)            -> document   | AppError(PIN_COLLISION)
    get_record_by_pin(pin)                  -> document   | AppError(SPLIT_NOT_FOUND)
    overwrite_record(pin, document, origin) -> None       | AppError
    subscribe(pin, on_change)               -> Subscription

`on_change(document, origin)` is called for every accepted write to the PIN,
including the subscriber's own writes. `origin` is the WriteOrigin the writer
attached, or None when the store cannot report it.

There are no transactions, no locks and no merging: the last accepted
overwrite wins for the whole document.

Implementations:
  - InMemoryRecordStore: single-process store for tests and manual mode demos.
  - HttpRecordStore:     talks to the Flask record-store API (app/routes/splits.py).
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from typing import Callable, NamedTuple

import requests

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.services.document import document_from_wire, document_to_wire

logger = logging.getLogger(__name__)


class WriteOrigin(NamedTuple):
    """Which client issued a write, and that client's sequence number for it."""
    client_id: str
    seq: int

    def to_wire(self) -> dict:
        return {"clientId": self.client_id, "seq": self.seq}

    @classmethod
    def from_wire(cls, payload: dict | None) -> "WriteOrigin | None":
        if not payload or not payload.get("clientId") or payload.get("seq") is None:
            return None
        return cls(payload["clientId"], int(payload["seq"]))


ChangeCallback = Callable[[dict, "WriteOrigin | None"], None]


class Subscription:
    """Handle returned by subscribe(). unsubscribe() may be called any number of times."""

    def __init__(self, pin: str, close: Callable[[], None]) -> None:
        self.pin = pin
        self._close = close
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._close()


def _not_found(pin: str) -> AppError:
    return AppError(
        ErrorCode.SPLIT_NOT_FOUND,
        f"Split {pin} does not exist.",
        404,
    )


# ═══════════════════════════════════════════════════════════════════════════
# In-memory store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryRecordStore:
    """
    Process-local record store.

    Documents are kept in wire form, so every read hands out a fresh copy and
    Decimal prices go through the same string round trip as over HTTP.

    Args:
        deferred:       queue notifications instead of delivering them inside
                        overwrite_record(); call deliver_pending() to flush.
                        Used to reproduce out-of-order arrival between clients.
        include_origin: when False, notifications carry no WriteOrigin, like
                        a store that cannot report who wrote.
    """

    def __init__(self, deferred: bool = False, include_origin: bool = True) -> None:
        self.deferred = deferred
        self.include_origin = include_origin
        self._records: dict[str, dict] = {}
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)
        self._pending: list[tuple[str, dict, WriteOrigin | None]] = []
        self._lock = threading.RLock()

    # ── Record calls ───────────────────────────────────────────────────────

    def create_record(self, pin: str, document: dict) -> dict:
        with self._lock:
            if pin in self._records:
                raise AppError(
                    ErrorCode.PIN_COLLISION,
                    f"A split with PIN {pin} already exists.",
                    409,
                )
            self._records[pin] = document_to_wire(document)
            return document_from_wire(self._records[pin])

    def get_record_by_pin(self, pin: str) -> dict:
        with self._lock:
            if pin not in self._records:
                raise _not_found(pin)
            return document_from_wire(self._records[pin])

    def overwrite_record(self, pin: str, document: dict, origin: WriteOrigin | None = None) -> None:
        with self._lock:
            if pin not in self._records:
                raise _not_found(pin)
            wire = document_to_wire(document)
            self._records[pin] = wire
            notification = (pin, wire, origin if self.include_origin else None)
            if self.deferred:
                self._pending.append(notification)
                return
        self._deliver(*notification)

    def delete_record(self, pin: str) -> None:
        with self._lock:
            self._records.pop(pin, None)

    def exists(self, pin: str) -> bool:
        with self._lock:
            return pin in self._records

    # ── Notifications ──────────────────────────────────────────────────────

    def subscribe(self, pin: str, on_change: ChangeCallback) -> Subscription:
        with self._lock:
            self._subscribers[pin].append(on_change)

        def close() -> None:
            with self._lock:
                listeners = self._subscribers.get(pin, [])
                if on_change in listeners:
                    listeners.remove(on_change)

        return Subscription(pin, close)

    def subscriber_count(self, pin: str) -> int:
        with self._lock:
            return len(self._subscribers.get(pin, []))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def deliver_pending(self, reverse: bool = False) -> int:
        """Delivers queued notifications (oldest first, or newest first with reverse)."""
        with self._lock:
            pending, self._pending = self._pending, []
        if reverse:
            pending.reverse()
        for notification in pending:
            self._deliver(*notification)
        return len(pending)

    def _deliver(self, pin: str, wire: dict, origin: WriteOrigin | None) -> None:
        with self._lock:
            listeners = list(self._subscribers.get(pin, []))
        for listener in listeners:
            listener(document_from_wire(wire), origin)


# ═══════════════════════════════════════════════════════════════════════════
# HTTP store
# ═══════════════════════════════════════════════════════════════════════════

class HttpRecordStore:
    """
    Client for the splitroom record-store API.

    Error envelopes from the server are re-raised as the same AppError;
    network failures become STORE_UNAVAILABLE (503). Change notifications
    arrive over a server-sent-events stream read on a daemon thread, which
    reconnects after transport errors until the subscription is closed. Each
    reconnect re-reads the record once.
    """

    API_PREFIX = "/api/v1/splits"

    def __init__(
            self,
            base_url: str,
            timeout: float = 5.0,
            session: requests.Session | None = None,
            stream_session_factory: Callable[[], requests.Session] = requests.Session,
            reconnect_delay: float = 1.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.reconnect_delay = reconnect_delay
        self._session = session or requests.Session()
        self._stream_session_factory = stream_session_factory

    @classmethod
    def from_config(cls, config) -> "HttpRecordStore":
        return cls(
            base_url=config.RECORD_STORE_URL,
            timeout=config.RECORD_STORE_TIMEOUT_SECONDS,
        )

    def _url(self, suffix: str = "") -> str:
        return f"{self.base_url}{self.API_PREFIX}{suffix}"

    def _request(self, method: str, suffix: str, **kwargs) -> dict:
        try:
            resp = self._session.request(
                method,
                self._url(suffix),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise AppError(
                ErrorCode.STORE_UNAVAILABLE,
                f"Record store unreachable: {exc}",
                503,
            ) from exc

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            raise AppError.from_dict(body, resp.status_code)
        return body or {}

    # ── Record calls ───────────────────────────────────────────────────────

    def create_record(self, pin: str, document: dict) -> dict:
        body = self._request(
            "POST",
            "/",
            json={"pin": pin, "data": document_to_wire(document)},
        )
        return document_from_wire(body["data"]["data"])

    def get_record_by_pin(self, pin: str) -> dict:
        body = self._request("GET", f"/{pin}")
        return document_from_wire(body["data"]["data"])

    def overwrite_record(self, pin: str, document: dict, origin: WriteOrigin | None = None) -> None:
        self._request(
            "PUT",
            f"/{pin}",
            json={
                "data": document_to_wire(document),
                "origin": origin.to_wire() if origin else None,
            },
        )

    # ── Notifications ──────────────────────────────────────────────────────

    def subscribe(self, pin: str, on_change: ChangeCallback) -> Subscription:
        stop = threading.Event()
        state: dict = {"response": None}

        def close() -> None:
            stop.set()
            resp = state.get("response")
            if resp is not None:
                resp.close()

        thread = threading.Thread(
            target=self._listen,
            args=(pin, on_change, stop, state),
            name=f"splitroom-events-{pin}",
            daemon=True,
        )
        thread.start()
        return Subscription(pin, close)

    def _listen(self, pin: str, on_change: ChangeCallback, stop: threading.Event, state: dict) -> None:
        session = self._stream_session_factory()
        connected_before = False
        while not stop.is_set():
            try:
                with session.get(
                    self._url(f"/{pin}/events"),
                    stream=True,
                    timeout=(self.timeout, None),
                ) as resp:
                    if resp.status_code >= 400:
                        logger.warning(
                            "record_store: event stream for pin=%s refused (HTTP %s)",
                            pin, resp.status_code,
                        )
                    else:
                        state["response"] = resp
                        if connected_before:
                            self._resync(pin, on_change)
                        connected_before = True
                        self._consume(resp.iter_lines(decode_unicode=True), on_change, stop)
            except Exception as exc:
                # Closing the response from unsubscribe() surfaces here as
                # whatever the transport raises mid-read.
                if stop.is_set():
                    break
                logger.warning("record_store: event stream for pin=%s dropped: %s", pin, exc)
            finally:
                state["response"] = None
            stop.wait(self.reconnect_delay)
        session.close()

    def _resync(self, pin: str, on_change: ChangeCallback) -> None:
        """Reports the current record as an origin-less change, covering writes missed while disconnected."""
        try:
            document = self.get_record_by_pin(pin)
        except AppError as exc:
            logger.warning("record_store: resync of pin=%s after reconnect failed (%s)", pin, exc.code)
            return
        on_change(document, None)

    def _consume(self, lines, on_change: ChangeCallback, stop: threading.Event) -> None:
        """Parses a server-sent-events line stream and dispatches each `data:` event."""
        data_lines: list[str] = []
        for line in lines:
            if stop.is_set():
                return
            if line is None:
                continue
            if line == "":
                if data_lines:
                    self._dispatch("\n".join(data_lines), on_change)
                    data_lines = []
                continue
            if line.startswith(":"):
                continue  # keep-alive
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
        if data_lines and not stop.is_set():
            self._dispatch("\n".join(data_lines), on_change)

    def _dispatch(self, raw: str, on_change: ChangeCallback) -> None:
        try:
            payload = json.loads(raw)
            document = document_from_wire(payload["data"])
        except (ValueError, KeyError, TypeError, AppError) as exc:
            logger.warning("record_store: dropping malformed change event: %s", exc)
            return
        on_change(document, WriteOrigin.from_wire(payload.get("origin")))
