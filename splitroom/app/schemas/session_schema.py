"""
schemas/session_schema.py — The device-local session record.

Persisted wholesale on every relevant transition and removed on
leave/end/reset. Anything that fails to load here is treated as a stale
session: the lifecycle purges it and starts fresh.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from marshmallow import EXCLUDE, Schema, fields, validate

from splitroom.app.schemas.split_schema import DEFAULT_PARTICIPANT_COLOR


class LocalSessionSchema(Schema):

    class Meta:
        unknown = EXCLUDE

    pin = fields.Str(required=True, validate=validate.Regexp(r"^\d+$"))
    participant_id = fields.Str(
        required=True,
        data_key="participantId",
        validate=validate.Length(min=1),
    )
    participant_name = fields.Str(
        required=True,
        data_key="participantName",
        validate=validate.Length(min=1),
    )
    participant_color = fields.Str(
        data_key="participantColor",
        load_default=DEFAULT_PARTICIPANT_COLOR,
    )
    is_host = fields.Bool(data_key="isHost", load_default=False)
