"""
errors.py — AppError base class and error code registry.

Every error raised by splitroom, on the server or inside the live-split
client core, uses a code defined here. Do not raise strings or generic
exceptions from service, client or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - The HTTP record-store client re-raises the server's envelope through
    AppError.from_dict(), so a code means the same thing on both sides.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    @classmethod
    def from_dict(cls, body: dict | None, http_status: int) -> "AppError":
        """
        Rebuilds an AppError from a JSON error envelope.

        Falls back to INTERNAL_ERROR when the body is not an envelope
        (proxy error pages, empty bodies).
        """
        payload = (body or {}).get("error") if isinstance(body, dict) else None
        if not isinstance(payload, dict):
            return cls(
                ErrorCode.INTERNAL_ERROR,
                f"Unexpected response from record store (HTTP {http_status}).",
                http_status,
            )
        return cls(
            payload.get("code", ErrorCode.INTERNAL_ERROR),
            payload.get("message", ""),
            http_status,
            field=payload.get("field"),
        )

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_PIN                = "INVALID_PIN"
    INVALID_ITEM               = "INVALID_ITEM"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    SPLIT_NOT_FOUND            = "SPLIT_NOT_FOUND"
    ITEM_NOT_FOUND             = "ITEM_NOT_FOUND"
    PARTICIPANT_NOT_FOUND      = "PARTICIPANT_NOT_FOUND"

    # ── Conflict / Gone / Locked ───────────────────────────────────────────
    PIN_COLLISION              = "PIN_COLLISION"              # 409
    INVALID_STATUS_TRANSITION  = "INVALID_STATUS_TRANSITION"  # 409
    NOT_IN_SPLIT               = "NOT_IN_SPLIT"               # 409
    SPLIT_ENDED                = "SPLIT_ENDED"                # 410
    SPLIT_LOCKED               = "SPLIT_LOCKED"               # 423
    CONFIRMATION_REQUIRED      = "CONFIRMATION_REQUIRED"      # 428

    # ── Business Rule Violations (422) ────────────────────────────────────
    ITEM_NOT_SPLITTABLE        = "ITEM_NOT_SPLITTABLE"
    UNKNOWN_ASSIGNEE           = "UNKNOWN_ASSIGNEE"

    # ── Host gating (403) ──────────────────────────────────────────────────
    # Cosmetic only: the record store accepts writes from any PIN holder.
    HOST_ONLY                  = "HOST_ONLY"

    # ── Collaborator failures ──────────────────────────────────────────────
    SYNC_WRITE_FAILED          = "SYNC_WRITE_FAILED"          # 502, logged and swallowed
    EXTRACTION_FAILED          = "EXTRACTION_FAILED"          # 502
    PIN_EXHAUSTED              = "PIN_EXHAUSTED"              # 503
    STORE_UNAVAILABLE          = "STORE_UNAVAILABLE"          # 503
    RESTORE_FAILED             = "RESTORE_FAILED"             # 500, purge and fall back

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"
