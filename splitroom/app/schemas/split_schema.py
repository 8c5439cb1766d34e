"""
schemas/split_schema.py — Marshmallow schemas for the Split Document.

The document travels in camelCase (`assignedTo`, `splitGroupId`, `hostId`)
and lives in memory in snake_case; `data_key` does the mapping in both
directions. Prices are Decimal in memory and strings on the wire.

Validation responsibility:
  - This file: field types, price ≥ 0, quantity ≥ 1, non-blank names,
    unique ids, every assignee present in `users`.
  - services/item_service.py: operations on a loaded document
    (split/merge, assignment, participant removal).
  - services/status_service.py: which status transitions are allowed.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the full explanation.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    EXCLUDE,
    Schema,
    ValidationError,
    fields,
    post_dump,
    validate,
    validates_schema,
)

from splitroom.app.errors import ErrorCode
from splitroom.app.models.split_record import SplitStatus


DEFAULT_PARTICIPANT_COLOR = "#CBF300"

PIN_MIN_DIGITS = 4
PIN_MAX_DIGITS = 12
PIN_PATTERN = rf"^\d{{{PIN_MIN_DIGITS},{PIN_MAX_DIGITS}}}$"


def _validate_non_empty_after_trim(value: str) -> None:
    """Raises ValidationError if the string is blank or contains only whitespace."""
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


class ItemSchema(Schema):
    """One line item. `price` is the line total, already multiplied by quantity."""

    class Meta:
        unknown = EXCLUDE

    id = fields.Str(required=True, validate=_validate_non_empty_after_trim)
    name = fields.Str(required=True)

    price = fields.Decimal(
        required=True,
        as_string=True,
        validate=validate.Range(
            min=Decimal("0"),
            error="Price must not be negative.",
        ),
    )

    quantity = fields.Int(
        load_default=1,
        validate=validate.Range(min=1, error="Quantity must be at least 1."),
    )

    assigned_to = fields.List(
        fields.Str(),
        data_key="assignedTo",
        load_default=list,
    )

    # Absent when the item was never split or has been fully remerged.
    split_group_id = fields.Str(
        data_key="splitGroupId",
        allow_none=True,
        load_default=None,
    )

    bill_name = fields.Str(
        data_key="billName",
        allow_none=True,
        load_default=None,
    )

    @validates_schema
    def dedupe_assignees(self, data, **kwargs):
        assigned = data.get("assigned_to") or []
        if len(assigned) != len(set(assigned)):
            raise ValidationError(
                "The same participant appears more than once in assignedTo.",
                field_name="assignedTo",
            )

    @post_dump
    def drop_absent_optionals(self, data, **kwargs):
        for key in ("splitGroupId", "billName"):
            if data.get(key) is None:
                data.pop(key, None)
        return data


class ParticipantSchema(Schema):

    class Meta:
        unknown = EXCLUDE

    id = fields.Str(required=True, validate=_validate_non_empty_after_trim)
    name = fields.Str(required=True, validate=_validate_non_empty_after_trim)
    color = fields.Str(load_default=DEFAULT_PARTICIPANT_COLOR)


class SplitDocumentSchema(Schema):
    """
    The canonical shared document for one split.

    Cross-field rules that need the whole document:
      - participant ids are unique
      - item ids are unique
      - every id in an item's assignedTo references a participant in users
    """

    class Meta:
        unknown = EXCLUDE

    items = fields.List(fields.Nested(ItemSchema), load_default=list)
    users = fields.List(fields.Nested(ParticipantSchema), load_default=list)

    # Informational only; host privilege is tracked per client.
    host_id = fields.Str(data_key="hostId", load_default="")

    status = fields.Enum(
        SplitStatus,
        by_value=True,
        load_default=SplitStatus.WAITING,
    )

    @validates_schema
    def check_references(self, data, **kwargs):
        user_ids = [u["id"] for u in data.get("users", [])]
        if len(user_ids) != len(set(user_ids)):
            raise ValidationError(
                "The same participant id appears more than once in users.",
                field_name="users",
            )

        item_ids = [i["id"] for i in data.get("items", [])]
        if len(item_ids) != len(set(item_ids)):
            raise ValidationError(
                "The same item id appears more than once in items.",
                field_name="items",
            )

        known = set(user_ids)
        for item in data.get("items", []):
            if any(uid not in known for uid in item.get("assigned_to", [])):
                raise ValidationError(ErrorCode.UNKNOWN_ASSIGNEE, field_name="items")


class WriteOriginSchema(Schema):
    """Identifies the client write a change notification came from."""

    client_id = fields.Str(
        required=True,
        data_key="clientId",
        validate=_validate_non_empty_after_trim,
    )
    seq = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="seq must be a positive integer."),
    )


class CreateSplitSchema(Schema):
    """POST /splits"""

    pin = fields.Str(
        required=True,
        validate=validate.Regexp(PIN_PATTERN, error=ErrorCode.INVALID_PIN),
    )
    data = fields.Nested(SplitDocumentSchema, required=True)


class OverwriteSplitSchema(Schema):
    """PUT /splits/:pin — always the full document, never a delta."""

    data = fields.Nested(SplitDocumentSchema, required=True)
    origin = fields.Nested(WriteOriginSchema, allow_none=True, load_default=None)
