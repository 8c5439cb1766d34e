"""
services/sync_engine.py — Keeps one client's Split Document in step with the record store.

Model:
  - The engine owns the client's in-memory projection of the document. The
    record store is authoritative; the projection is a cache that converges
    after every round trip.
  - Local changes are optimistic: applied to the projection first, then the
    ENTIRE document is overwritten remotely. Never a delta. Two clients
    editing different items at the same moment can clobber each other; the
    last accepted write wins for the whole document.
  - Every accepted write is fanned out to every subscriber, the writer
    included. The writer must recognise its own echo and drop it, otherwise
    write → notify → reconcile → rewrite would loop.

Echo suppression:
  Each push carries WriteOrigin(client_id, seq) with a per-engine increasing
  seq. A notification reporting this client's id and a seq no newer than the
  last one issued is an echo and is dropped; notifications from any other
  writer are always applied. The one exception: when a foreign notification
  was applied after the newest write was issued, the store accepted that
  foreign write first, so the echo of the newest write carries the final
  value and is reconciled instead of dropped.

  Stores that cannot report an origin fall back to a fixed window: from the
  moment a write is issued until `echo_window` seconds after it completes,
  origin-less notifications are treated as echoes. A foreign write landing
  inside that window is dropped too; the next notification repairs the
  projection.

Reconciliation of a foreign notification:
  - items, status and host_id are replaced wholesale.
  - users are merged: every remote participant, then any locally known
    participant the remote copy does not have yet (a join that has been
    written but whose echo has not arrived). Each id appears once.
  - An ended projection stays ended.

Failures:
  A failed push is logged and swallowed (SYNC_WRITE_FAILED). The optimistic
  state stays applied and is carried forward by the next push; there is no
  retry loop.
"""

from __future__ import annotations

import functools
import logging
import math
import threading
import time
import uuid
from typing import Callable

from splitroom.app.clients.record_store import Subscription, WriteOrigin
from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitStatus
from splitroom.app.services.document import copy_document, empty_document
from splitroom.app.services.status_service import require_mutable

logger = logging.getLogger(__name__)

Mutator = Callable[[dict], dict]
Listener = Callable[[dict], None]


def merge_users(remote_users: list[dict], local_users: list[dict]) -> list[dict]:
    """
    Remote participants first, then local ones the remote copy lacks.
    Ids are unique in the result; the remote entry wins for a shared id.
    """
    merged: list[dict] = []
    seen: set[str] = set()
    for participant in list(remote_users) + list(local_users):
        if participant["id"] in seen:
            continue
        seen.add(participant["id"])
        merged.append(dict(participant))
    return merged


class SyncEngine:

    def __init__(
            self,
            store,
            client_id: str | None = None,
            echo_window: float = 1.5,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.client_id = client_id or str(uuid.uuid4())
        self.echo_window = echo_window
        self._clock = clock

        self._lock = threading.RLock()
        self._document: dict = empty_document()
        self._pin: str | None = None
        self._subscription: Subscription | None = None
        self._write_seq = 0
        # Seq of the newest own write that a foreign notification overtook.
        self._overtaken_seq: int | None = None
        self._suppress_until = 0.0
        self._listeners: list[Listener] = []

        self.last_sync_error: AppError | None = None

    @classmethod
    def from_config(cls, store, config, **kwargs) -> "SyncEngine":
        return cls(store, echo_window=config.ECHO_SUPPRESSION_SECONDS, **kwargs)

    # ── State ──────────────────────────────────────────────────────────────

    @property
    def document(self) -> dict:
        """A copy of the current projection."""
        with self._lock:
            return copy_document(self._document)

    @property
    def status(self) -> SplitStatus:
        with self._lock:
            return SplitStatus(self._document["status"])

    @property
    def pin(self) -> str | None:
        return self._pin

    @property
    def is_live(self) -> bool:
        return self._pin is not None

    @property
    def write_seq(self) -> int:
        return self._write_seq

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def attach(self, pin: str, document: dict | None = None) -> None:
        """
        Makes `pin` the active split, optionally adopting `document` as the
        projection. Any previous subscription is closed before the new one
        is opened.
        """
        with self._lock:
            self._close_subscription()
            self._pin = pin
            self._suppress_until = 0.0
            self._overtaken_seq = None
            if document is not None:
                self._document = copy_document(document)
            self._subscription = self.store.subscribe(
                pin, functools.partial(self._receive, pin)
            )
        logger.info("sync: attached to pin=%s as client=%s", pin, self.client_id)
        self._notify()

    def detach(self) -> None:
        """Stops syncing. Safe to call when nothing is attached."""
        with self._lock:
            self._close_subscription()
            pin, self._pin = self._pin, None
        if pin is not None:
            logger.info("sync: detached from pin=%s", pin)

    def load(self, document: dict) -> None:
        """Replaces the projection without writing it anywhere."""
        with self._lock:
            self._document = copy_document(document)
        self._notify()

    def reset(self) -> None:
        self.detach()
        self.load(empty_document())

    def _close_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    # ── Outbound ───────────────────────────────────────────────────────────

    def apply_local_mutation(self, mutator: Mutator) -> dict:
        """
        Applies `mutator` (document -> new document) optimistically and, when
        a PIN is attached, pushes the full result.

        Raises:
          AppError(SPLIT_ENDED, 410) — the projection has already ended
          Any AppError the mutator raises; the projection is left untouched.
        """
        with self._lock:
            require_mutable(self._document["status"])
            updated = mutator(copy_document(self._document))
            self._document = updated
            live = self._pin is not None
        self._notify()
        if live:
            self.push()
        return self.document

    def push(self) -> bool:
        """
        Overwrites the remote record with the whole projection.

        Returns True on success. A failure is logged, recorded in
        last_sync_error and swallowed; the local state is kept.
        """
        with self._lock:
            pin = self._pin
            if pin is None:
                return False
            self._write_seq += 1
            origin = WriteOrigin(self.client_id, self._write_seq)
            snapshot = copy_document(self._document)
            # Held open until the write completes, then for echo_window more.
            self._suppress_until = math.inf

        try:
            self.store.overwrite_record(pin, snapshot, origin)
        except AppError as exc:
            logger.warning(
                "sync: write seq=%s to pin=%s failed (%s): %s",
                origin.seq, pin, exc.code, exc.message,
            )
            self.last_sync_error = AppError(
                ErrorCode.SYNC_WRITE_FAILED,
                f"Changes to split {pin} are saved locally but not yet synced.",
                502,
            )
            return False
        finally:
            with self._lock:
                self._suppress_until = self._clock() + self.echo_window

        self.last_sync_error = None
        return True

    # ── Inbound ────────────────────────────────────────────────────────────

    def _receive(self, pin: str, document: dict, origin: WriteOrigin | None = None) -> None:
        # Late event from a subscription that has since been replaced.
        if pin != self._pin:
            return
        self.on_remote_notification(document, origin)

    def is_echo(self, origin: WriteOrigin | None) -> bool:
        if origin is not None:
            if origin.client_id != self.client_id or origin.seq > self._write_seq:
                return False
            if origin.seq < self._write_seq:
                return True
            return origin.seq != self._overtaken_seq
        return self._clock() < self._suppress_until

    def on_remote_notification(self, document: dict, origin: WriteOrigin | None = None) -> bool:
        """
        Reconciles a change notification into the projection.
        Returns False when it was dropped as this client's own echo.
        """
        with self._lock:
            if self.is_echo(origin):
                logger.debug("sync: dropped echo origin=%s", origin)
                return False

            if origin is not None and origin.client_id == self.client_id:
                # Own newest write landed after a foreign one: the store holds it.
                self._overtaken_seq = None
            elif self._write_seq:
                self._overtaken_seq = self._write_seq

            local = self._document
            status = SplitStatus(document["status"])
            if SplitStatus(local["status"]) is SplitStatus.ENDED:
                status = SplitStatus.ENDED

            self._document = {
                "items": copy_document(document["items"]),
                "users": merge_users(document["users"], local["users"]),
                "host_id": document.get("host_id") or local.get("host_id", ""),
                "status": status,
            }
        self._notify()
        return True

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.document
        for listener in list(self._listeners):
            listener(snapshot)
