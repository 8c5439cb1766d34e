"""
services/session_service.py — Create, join, rejoin, leave, end and restore a split.

LiveSession is the one object a client holds for its active split. It owns
the SyncEngine, talks to the record store and the device-local session
store, and tracks what the client is showing (SessionView).

Protocols:
  create   Pick a random PIN, probe the store for a collision, retry up to
           PIN_MAX_ATTEMPTS, then write the document with status=waiting.
           The creator becomes the (client-local) host.
  join     Validate the PIN, then, in order:
             1. this device has a saved session for the same PIN → rejoin
                with the saved participant id, adopt the latest document
                verbatim, write nothing;
             2. someone with the same trimmed, case-insensitive name is
                already in the room → become that participant, write nothing;
             3. otherwise add a new participant, put them on every existing
                item, and push.
           A locked room rejects joins, except a rejoin.
  leave    Best effort: drop the participant remotely and strip them from
           every item. Local state is cleared whatever the store says.
  end      Host, or any participant with force=True and confirmation.
  restore  On start, render the saved session at once, then fetch the
           document with a bounded wait. Ended → ended view. Missing or
           unreachable → purge and go back to the initial view. A deep-link
           PIN that differs from the saved one discards the saved session.

Name matching in step 2 will fold two different people with the same display
name into one participant. That is accepted behaviour, not a bug to patch here.
"""

from __future__ import annotations

import enum
import functools
import logging
import queue
import random
import re
import threading
import uuid
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitStatus
from splitroom.app.services import item_service
from splitroom.app.services.status_service import (
    require_joinable,
    require_transition,
    with_status,
)
from splitroom.app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

JOIN_PARAM = "join"


class SessionView(str, enum.Enum):
    INITIAL   = "initial"
    SPLITTING = "splitting"
    ENDED     = "ended"


# ── Deep links ─────────────────────────────────────────────────────────────

def parse_join_pin(url: str | None) -> str | None:
    """Returns the `join` query parameter of `url`, or None."""
    if not url:
        return None
    for key, value in parse_qsl(urlsplit(url).query):
        if key == JOIN_PARAM and value.strip():
            return value.strip()
    return None


def _with_query(url: str, params: list[tuple[str, str]]) -> str:
    parts = urlsplit(url)
    return urlunsplit(parts._replace(query=urlencode(params)))


def build_share_url(base_url: str, pin: str) -> str:
    """`base_url` with its `join` parameter set to `pin`; other parameters kept."""
    params = [(k, v) for k, v in parse_qsl(urlsplit(base_url).query) if k != JOIN_PARAM]
    params.append((JOIN_PARAM, pin))
    return _with_query(base_url, params)


def clear_join_param(url: str) -> str:
    params = [(k, v) for k, v in parse_qsl(urlsplit(url).query) if k != JOIN_PARAM]
    return _with_query(url, params)


# ── Session ────────────────────────────────────────────────────────────────

class LiveSession:

    def __init__(
            self,
            record_store,
            local_store,
            *,
            engine: SyncEngine | None = None,
            config=None,
            rng: random.Random | None = None,
            entry_url: str | None = None,
    ) -> None:
        if config is None:
            from splitroom.config import ActiveConfig as config

        self.record_store = record_store
        self.local_store = local_store
        self.engine = engine or SyncEngine.from_config(record_store, config)

        self.pin_length: int = config.PIN_LENGTH
        self.max_pin_attempts: int = config.PIN_MAX_ATTEMPTS
        self.fetch_timeout: float = config.REMOTE_FETCH_TIMEOUT_SECONDS
        self.share_base_url: str = config.SHARE_BASE_URL

        self._rng = rng or random.SystemRandom()

        self.location: str = entry_url or self.share_base_url
        self.pending_join_pin: str | None = parse_join_pin(entry_url)
        self.is_host = False
        self.current_participant: dict | None = None
        self.view = SessionView.INITIAL
        self.is_restoring = False
        self.error: str | None = None

        self.engine.add_listener(self._on_document_change)

    @classmethod
    def from_config(cls, config=None, **kwargs) -> "LiveSession":
        """Builds a session wired to the HTTP record store and the JSON-file local store."""
        from splitroom.app.clients.local_session_store import JsonFileLocalSessionStore
        from splitroom.app.clients.record_store import HttpRecordStore

        if config is None:
            from splitroom.config import ActiveConfig as config

        return cls(
            HttpRecordStore.from_config(config),
            JsonFileLocalSessionStore.from_config(config),
            config=config,
            **kwargs,
        )

    # ── Read-only views ────────────────────────────────────────────────────

    @property
    def pin(self) -> str | None:
        return self.engine.pin

    @property
    def is_live(self) -> bool:
        return self.engine.is_live

    @property
    def document(self) -> dict:
        return self.engine.document

    @property
    def status(self) -> SplitStatus:
        return self.engine.status

    @property
    def share_url(self) -> str | None:
        return build_share_url(self.share_base_url, self.pin) if self.pin else None

    def user_totals(self) -> dict:
        return item_service.compute_user_totals(self.engine.document)

    def user_breakdown(self) -> list[dict]:
        return item_service.build_user_breakdown(self.engine.document)

    # ── Private helpers ────────────────────────────────────────────────────

    def _fetch_document(self, pin: str) -> dict:
        """
        Reads the record for `pin`, giving up after fetch_timeout seconds.

        Raises whatever the store raises, or STORE_UNAVAILABLE (504) on timeout.
        """
        outcome: queue.Queue = queue.Queue(maxsize=1)

        def fetch() -> None:
            try:
                outcome.put((True, self.record_store.get_record_by_pin(pin)))
            except Exception as exc:
                outcome.put((False, exc))

        # Daemon: a read that never returns must not block interpreter exit.
        threading.Thread(target=fetch, name=f"splitroom-fetch-{pin}", daemon=True).start()
        try:
            ok, value = outcome.get(timeout=self.fetch_timeout)
        except queue.Empty as exc:
            raise AppError(
                ErrorCode.STORE_UNAVAILABLE,
                f"Timed out loading split {pin}.",
                504,
            ) from exc
        if not ok:
            raise value
        return value

    def _fetch_or_not_found(self, pin: str) -> dict:
        """Like _fetch_document, but any failure surfaces as SPLIT_NOT_FOUND (404)."""
        try:
            return self._fetch_document(pin)
        except AppError as exc:
            if exc.code != ErrorCode.SPLIT_NOT_FOUND:
                logger.warning("session: read of pin=%s failed (%s)", pin, exc.code)
            raise AppError(
                ErrorCode.SPLIT_NOT_FOUND,
                "Split not found. Check the PIN and try again.",
                404,
                field="pin",
            ) from exc

    def _load_saved_session(self) -> dict | None:
        try:
            return self.local_store.load()
        except AppError as exc:
            logger.warning("session: discarding unreadable saved session (%s)", exc.code)
            self.local_store.clear()
            return None

    def _save_local_session(self) -> None:
        if self.pin is None or self.current_participant is None:
            return
        self.local_store.save({
            "pin": self.pin,
            "participant_id": self.current_participant["id"],
            "participant_name": self.current_participant["name"],
            "participant_color": self.current_participant["color"],
            "is_host": self.is_host,
        })

    def _require_live(self) -> str:
        if self.pin is None:
            raise AppError(
                ErrorCode.NOT_IN_SPLIT,
                "There is no live split to do that on.",
                409,
            )
        return self.pin

    def _require_not_live(self) -> None:
        if self.pin is not None:
            raise AppError(
                ErrorCode.INVALID_STATUS_TRANSITION,
                f"Already in split {self.pin}. Leave it first.",
                409,
            )

    def _teardown(self, view: SessionView = SessionView.INITIAL) -> None:
        """Drops the live split locally: subscription, saved session and deep link."""
        self.engine.reset()
        self.local_store.clear()
        self.is_host = False
        self.current_participant = None
        self.pending_join_pin = None
        self.location = clear_join_param(self.location)
        self.view = view

    def _on_document_change(self, document: dict) -> None:
        # Someone else ended the split.
        if (
            SplitStatus(document["status"]) is SplitStatus.ENDED
            and self.view is SessionView.SPLITTING
            and self.is_live
        ):
            logger.info("session: split %s ended remotely", self.pin)
            self.local_store.clear()
            self.location = clear_join_param(self.location)
            self.view = SessionView.ENDED

    # ── PIN ────────────────────────────────────────────────────────────────

    def generate_pin(self) -> str:
        """A random PIN of pin_length digits with no leading zero."""
        low = 10 ** (self.pin_length - 1)
        return str(self._rng.randrange(low, low * 10))

    def _pin_is_free(self, pin: str) -> bool:
        try:
            self.record_store.get_record_by_pin(pin)
        except AppError as exc:
            if exc.code == ErrorCode.SPLIT_NOT_FOUND:
                return True
            raise
        return False

    def validate_pin(self, pin: str) -> dict:
        """
        Checks that `pin` addresses a room that can still be joined.

        Raises:
          AppError(INVALID_PIN, 400)     — not pin_length digits
          AppError(SPLIT_NOT_FOUND, 404) — no such room, or the read failed
          AppError(SPLIT_ENDED, 410)     — the room has ended

        Returns: the fetched document.
        """
        pin = (pin or "").strip()
        if not re.fullmatch(rf"\d{{{self.pin_length}}}", pin):
            raise AppError(
                ErrorCode.INVALID_PIN,
                f"PIN must be {self.pin_length} digits.",
                400,
                field="pin",
            )
        document = self._fetch_or_not_found(pin)
        if SplitStatus(document["status"]) is SplitStatus.ENDED:
            raise AppError(
                ErrorCode.SPLIT_ENDED,
                "This split has ended.",
                410,
            )
        return document

    # ── Create ─────────────────────────────────────────────────────────────

    def create_split(self, host_name: str | None = None) -> str:
        """
        Publishes the current items and participants as a new live split.

        Raises:
          AppError(PIN_EXHAUSTED, 503) — no free PIN within max_pin_attempts
          Any store error other than a PIN collision.

        Returns: the new PIN.
        """
        self._require_not_live()
        self.error = None

        host = self.current_participant
        if host is None and host_name:
            host = item_service.new_participant(host_name, rng=self._rng)

        document = self.engine.document
        if host is not None:
            document = item_service.add_participant(document, host, assign_to_all=False)
        document["host_id"] = host["id"] if host else str(uuid.uuid4())
        document["status"] = SplitStatus.WAITING

        created = None
        for attempt in range(1, self.max_pin_attempts + 1):
            candidate = self.generate_pin()
            if not self._pin_is_free(candidate):
                logger.debug("session: pin %s taken (attempt %s)", candidate, attempt)
                continue
            try:
                created = self.record_store.create_record(candidate, document)
            except AppError as exc:
                if exc.code != ErrorCode.PIN_COLLISION:
                    self.error = exc.message
                    raise
                logger.debug("session: pin %s claimed concurrently (attempt %s)", candidate, attempt)
                continue
            pin = candidate
            break
        else:
            self.error = "Unable to generate a unique PIN. Please try again."
            raise AppError(ErrorCode.PIN_EXHAUSTED, self.error, 503)

        self.is_host = True
        self.current_participant = host
        self.engine.attach(pin, created)
        self._save_local_session()
        self.location = build_share_url(self.location, pin)
        self.pending_join_pin = None
        self.view = SessionView.SPLITTING
        logger.info("session: created split %s", pin)
        return pin

    # ── Join ───────────────────────────────────────────────────────────────

    def join_split(self, pin: str, name: str) -> dict:
        """
        Joins (or rejoins) the split at `pin` as `name`.

        Raises:
          AppError(INVALID_PIN, 400), AppError(SPLIT_NOT_FOUND, 404),
          AppError(SPLIT_ENDED, 410), AppError(SPLIT_LOCKED, 423),
          AppError(INVALID_FIELD, 400) — blank display name for a newcomer

        Returns: the participant this device now is.
        """
        self.error = None
        try:
            return self._join(pin.strip(), name)
        except AppError as exc:
            self.error = exc.message
            raise

    def _join(self, pin: str, name: str) -> dict:
        if self.pin is not None and self.pin != pin:
            self._require_not_live()

        document = self.validate_pin(pin)

        saved = self._load_saved_session()
        is_rejoin = saved is not None and saved["pin"] == pin
        require_joinable(document["status"], is_rejoin)

        latest = self._fetch_or_not_found(pin)

        if is_rejoin:
            existing = next(
                (u for u in latest["users"] if u["id"] == saved["participant_id"]),
                None,
            )
            if existing is not None:
                self.is_host = saved["is_host"]
                logger.info("session: rejoined %s as %s", pin, existing["id"])
                return self._enter(pin, latest, existing)

        match = item_service.find_participant_by_name(latest, name)
        if match is not None:
            self.is_host = match["id"] == latest.get("host_id")
            logger.info("session: joined %s as existing participant %s", pin, match["id"])
            return self._enter(pin, latest, match)

        participant = item_service.new_participant(name, rng=self._rng)
        self.is_host = False
        self._enter(pin, latest, participant)
        self.engine.apply_local_mutation(
            functools.partial(item_service.add_participant, participant=participant)
        )
        logger.info("session: joined %s as new participant %s", pin, participant["id"])
        return participant

    def _enter(self, pin: str, document: dict, participant: dict) -> dict:
        self.engine.attach(pin, document)
        self.current_participant = dict(participant)
        self._save_local_session()
        self.pending_join_pin = None
        self.location = clear_join_param(self.location)
        self.view = SessionView.SPLITTING
        return self.current_participant

    # ── Leave / status ─────────────────────────────────────────────────────

    def leave_split(self) -> None:
        """Removes this participant remotely (best effort) and returns to the initial view."""
        pin = self.pin
        participant = self.current_participant
        if pin is not None and participant is not None:
            try:
                latest = self._fetch_document(pin)
                still_listed = any(u["id"] == participant["id"] for u in latest["users"])
                if still_listed and SplitStatus(latest["status"]) is not SplitStatus.ENDED:
                    self.engine.load(latest)
                    self.engine.apply_local_mutation(
                        functools.partial(
                            item_service.remove_participant,
                            participant_id=participant["id"],
                        )
                    )
            except AppError as exc:
                logger.warning(
                    "session: could not remove %s from %s (%s); leaving anyway",
                    participant["id"], pin, exc.code,
                )
        self._teardown()
        logger.info("session: left split %s", pin)

    def start_room(self) -> None:
        """Host only: waiting → active."""
        self._require_live()
        require_transition(self.status, SplitStatus.ACTIVE, self.is_host)
        self.engine.apply_local_mutation(
            functools.partial(with_status, status=SplitStatus.ACTIVE)
        )

    def toggle_lock(self) -> SplitStatus:
        """Host only: active ⇄ locked. Returns the new status."""
        self._require_live()
        target = SplitStatus.ACTIVE if self.status is SplitStatus.LOCKED else SplitStatus.LOCKED
        require_transition(self.status, target, self.is_host)
        self.engine.apply_local_mutation(functools.partial(with_status, status=target))
        return target

    def end_split(self, force: bool = False, confirmed: bool = False) -> None:
        """
        Ends the split for everyone. Irreversible.

        A non-host may end an abandoned room with force=True, and must pass
        confirmed=True to show they were asked.

        Raises:
          AppError(NOT_IN_SPLIT, 409), AppError(CONFIRMATION_REQUIRED, 428),
          AppError(HOST_ONLY, 403), AppError(SPLIT_ENDED, 410)
        """
        pin = self._require_live()
        if force and not confirmed:
            raise AppError(
                ErrorCode.CONFIRMATION_REQUIRED,
                "Ending the split for everyone cannot be undone. Confirm to continue.",
                428,
            )
        require_transition(self.status, SplitStatus.ENDED, self.is_host, force=force)
        self.engine.apply_local_mutation(
            functools.partial(with_status, status=SplitStatus.ENDED)
        )
        self.engine.detach()
        self.local_store.clear()
        self.location = clear_join_param(self.location)
        self.view = SessionView.ENDED
        logger.info("session: ended split %s%s", pin, " (forced)" if force else "")

    # ── Restore / reset ────────────────────────────────────────────────────

    def restore_on_start(self, entry_url: str | None = None) -> SessionView:
        """
        Resumes a saved session, if any. Never raises for store trouble:
        every failure degrades to the initial view.

        Returns: the view to show.
        """
        self.is_restoring = True
        try:
            return self._restore(entry_url)
        finally:
            self.is_restoring = False

    def _restore(self, entry_url: str | None) -> SessionView:
        if entry_url:
            self.location = entry_url
        url_pin = parse_join_pin(self.location)
        if url_pin:
            self.pending_join_pin = url_pin

        saved = self._load_saved_session()
        if saved is None:
            return self.view

        if url_pin and url_pin != saved["pin"]:
            logger.info("session: deep link %s overrides saved split %s", url_pin, saved["pin"])
            self.local_store.clear()
            return self.view

        pin = saved["pin"]
        me = {
            "id": saved["participant_id"],
            "name": saved["participant_name"],
            "color": saved["participant_color"],
        }
        self.current_participant = me
        self.is_host = saved["is_host"]
        self.engine.attach(pin)
        self.view = SessionView.SPLITTING

        try:
            document = self._fetch_document(pin)
        except AppError as exc:
            logger.warning("session: could not restore split %s (%s)", pin, exc.code)
            self._teardown()
            return self.view

        if SplitStatus(document["status"]) is SplitStatus.ENDED:
            self.engine.detach()
            self.engine.load(document)
            self.local_store.clear()
            self.location = clear_join_param(self.location)
            self.pending_join_pin = None
            self.view = SessionView.ENDED
            return self.view

        self.engine.load(document)
        self.current_participant = next(
            (dict(u) for u in document["users"] if u["id"] == me["id"]),
            me,
        )
        if self.pending_join_pin == pin:
            self.pending_join_pin = None
        logger.info("session: restored split %s", pin)
        return self.view

    def reset(self) -> None:
        """Forgets everything: live split, saved session, items and people."""
        self._teardown()
        self.error = None

    def clear_pending_join_pin(self) -> None:
        self.pending_join_pin = None

    # ── Manual mode ────────────────────────────────────────────────────────

    def start_manual_split(self) -> None:
        """Splits on this device only: no PIN, already active, this client acts as host."""
        self._require_not_live()
        self.engine.load(with_status(self.engine.document, SplitStatus.ACTIVE))
        self.is_host = True
        self.view = SessionView.SPLITTING

    # ── Document edits (routed through the sync engine) ────────────────────

    def add_participant(self, name: str, color: str | None = None, assign_to_all: bool = True) -> dict:
        participant = item_service.new_participant(name, color=color, rng=self._rng)
        self.engine.apply_local_mutation(
            functools.partial(
                item_service.add_participant,
                participant=participant,
                assign_to_all=assign_to_all,
            )
        )
        return participant

    def remove_participant(self, participant_id: str) -> dict:
        return self.engine.apply_local_mutation(
            functools.partial(item_service.remove_participant, participant_id=participant_id)
        )

    def add_item(self, name: str, price, quantity: int = 1, bill_name: str | None = None) -> dict:
        item = item_service.new_item(name, price, quantity=quantity, bill_name=bill_name)
        self.engine.apply_local_mutation(functools.partial(item_service.add_item, item=item))
        return item

    def load_receipt_items(self, items: list[dict]) -> dict:
        return self.engine.apply_local_mutation(
            functools.partial(item_service.add_items, items=items)
        )

    def remove_item(self, item_id: str) -> dict:
        return self.engine.apply_local_mutation(
            functools.partial(item_service.remove_item, item_id=item_id)
        )

    def update_item_assignment(self, item_id: str, participant_id: str, action: str) -> dict:
        """action is "add" or "remove"."""
        if action not in ("add", "remove"):
            raise AppError(
                ErrorCode.INVALID_FIELD,
                "action must be 'add' or 'remove'.",
                400,
                field="action",
            )
        return self.engine.apply_local_mutation(
            functools.partial(
                item_service.set_assignment,
                item_id=item_id,
                participant_id=participant_id,
                assigned=action == "add",
            )
        )

    def assign_everyone(self) -> dict:
        return self.engine.apply_local_mutation(item_service.assign_everyone)

    def split_item(self, item_id: str) -> dict:
        return self.engine.apply_local_mutation(
            functools.partial(item_service.split_item, item_id=item_id)
        )

    def merge_split_group(self, split_group_id: str) -> dict:
        return self.engine.apply_local_mutation(
            functools.partial(item_service.merge_split_group, split_group_id=split_group_id)
        )
