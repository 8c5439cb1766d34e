"""
services/receipt_service.py — Turns recognised receipt rows into document items.

Recognition itself (OCR, a vision model, ...) is an external callable:

    recognizer(image_bytes) -> list[{"name", "price", "quantity"?}]

`price` is the line total and `quantity` defaults to 1. Nothing the
recognizer returns reaches a document until it has passed
ExtractedItemSchema, so every produced item has price ≥ 0 and quantity ≥ 1.

Any failure, including a recognizer that raises or returns rubbish, becomes
a single EXTRACTION_FAILED (502) for the caller to show as a retry prompt.
"""

from __future__ import annotations

import logging
from typing import Callable

from marshmallow import ValidationError

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.schemas.receipt_schema import ExtractedItemSchema
from splitroom.app.services.item_service import new_item

logger = logging.getLogger(__name__)

Recognizer = Callable[[bytes], list]

_schema = ExtractedItemSchema(many=True)


def _extraction_failed(detail: str) -> AppError:
    return AppError(
        ErrorCode.EXTRACTION_FAILED,
        f"Could not read items from the receipt: {detail}",
        502,
    )


def ingest_extracted_items(raw_items, bill_name: str | None = None) -> list[dict]:
    """
    Validates recognised rows and returns new, unassigned items.

    Raises:
      AppError(EXTRACTION_FAILED, 502) — not a list, or a row fails validation
    """
    if not isinstance(raw_items, (list, tuple)):
        raise _extraction_failed("expected a list of items.")
    try:
        rows = _schema.load(list(raw_items))
    except ValidationError as exc:
        raise _extraction_failed(str(exc.messages)) from exc

    label = bill_name.strip() if bill_name and bill_name.strip() else None
    return [
        new_item(row["name"], row["price"], quantity=row["quantity"], bill_name=label)
        for row in rows
    ]


def extract_items(recognizer: Recognizer, image_bytes: bytes, bill_name: str | None = None) -> list[dict]:
    """Runs `recognizer` on one image and ingests its output."""
    if not image_bytes:
        raise _extraction_failed("the image is empty.")
    try:
        raw_items = recognizer(image_bytes)
    except AppError:
        raise
    except Exception as exc:
        logger.warning("receipt: recognizer failed: %s", exc)
        raise _extraction_failed("recognition failed.") from exc

    items = ingest_extracted_items(raw_items, bill_name=bill_name)
    logger.info("receipt: extracted %s item(s)%s", len(items), f" for {bill_name!r}" if bill_name else "")
    return items
