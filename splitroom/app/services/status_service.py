"""
services/status_service.py — The split status state machine.

    waiting → active → locked ⇄ active
       └────────┴─────────┴──→ ended   (terminal)

Rules:
  - Every transition is host-initiated, except `ended`, which any participant
    may force when the host has gone away. There is no liveness detection;
    forcing is a manual decision.
  - `locked` blocks new joins (a device rejoining its own session still gets
    in) but not item or assignment changes by people already in the room.
  - Nothing leaves `ended`, and nothing is written to an ended split.

Host privilege is a client-local flag. The record store does not enforce any
of this; these checks only keep an honest client from issuing the write.
"""

from __future__ import annotations

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.models.split_record import SplitStatus


TRANSITIONS: dict[SplitStatus, frozenset[SplitStatus]] = {
    SplitStatus.WAITING: frozenset({SplitStatus.ACTIVE, SplitStatus.ENDED}),
    SplitStatus.ACTIVE:  frozenset({SplitStatus.LOCKED, SplitStatus.ENDED}),
    SplitStatus.LOCKED:  frozenset({SplitStatus.ACTIVE, SplitStatus.ENDED}),
    SplitStatus.ENDED:   frozenset(),
}


def can_transition(current: SplitStatus, target: SplitStatus) -> bool:
    return SplitStatus(target) in TRANSITIONS[SplitStatus(current)]


def with_status(document: dict, status: SplitStatus) -> dict:
    """Returns a copy of `document` carrying `status`."""
    return {**document, "status": SplitStatus(status)}


def require_mutable(status: SplitStatus) -> None:
    """Raises SPLIT_ENDED (410) once the split has ended."""
    if SplitStatus(status) is SplitStatus.ENDED:
        raise AppError(
            ErrorCode.SPLIT_ENDED,
            "This split has ended.",
            410,
        )


def require_transition(
        current: SplitStatus,
        target: SplitStatus,
        is_host: bool,
        force: bool = False,
) -> None:
    """
    Validates a status change before it is written.

    Raises:
      AppError(SPLIT_ENDED, 410)               — the split already ended
      AppError(INVALID_STATUS_TRANSITION, 409) — not an edge of the machine
      AppError(HOST_ONLY, 403)                 — a non-host tried a host move
    """
    current = SplitStatus(current)
    target = SplitStatus(target)

    require_mutable(current)

    if not can_transition(current, target):
        raise AppError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Cannot move a split from {current.value} to {target.value}.",
            409,
        )

    forced_end = force and target is SplitStatus.ENDED
    if not is_host and not forced_end:
        raise AppError(
            ErrorCode.HOST_ONLY,
            "Only the host can do that.",
            403,
        )


def require_joinable(status: SplitStatus, is_rejoin: bool) -> None:
    """
    Raises:
      AppError(SPLIT_ENDED, 410)  — the room has ended
      AppError(SPLIT_LOCKED, 423) — locked and this device was not already in it
    """
    status = SplitStatus(status)
    if status is SplitStatus.ENDED:
        raise AppError(
            ErrorCode.SPLIT_ENDED,
            "This split has ended.",
            410,
        )
    if status is SplitStatus.LOCKED and not is_rejoin:
        raise AppError(
            ErrorCode.SPLIT_LOCKED,
            "This room is locked by the host.",
            423,
        )
