"""
schemas/receipt_schema.py — Gate for items produced by receipt recognition.

The recognizer returns loosely typed rows ({name, price, quantity}); price is
the line total and quantity defaults to 1. Rows are validated here before
services/receipt_service.py turns them into document items.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import EXCLUDE, Schema, ValidationError, fields, pre_load, validate


def _validate_non_empty_after_trim(value: str) -> None:
    if not value.strip():
        raise ValidationError("Item name must not be blank.")


class ExtractedItemSchema(Schema):

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(required=True, validate=_validate_non_empty_after_trim)

    price = fields.Decimal(
        required=True,
        places=2,
        validate=validate.Range(min=Decimal("0"), error="Price must not be negative."),
    )

    quantity = fields.Int(
        load_default=1,
        validate=validate.Range(min=1, error="Quantity must be at least 1."),
    )

    @pre_load
    def default_missing_quantity(self, data, **kwargs):
        # Recognizers emit quantity: null or 0 when the receipt shows none.
        if isinstance(data, dict) and not data.get("quantity"):
            data = {**data, "quantity": 1}
        return data
