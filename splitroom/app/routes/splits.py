"""
routes/splits.py — Record-store route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - Change notifications are published only after the commit succeeds.

Endpoints (base url_prefix=/api/v1/splits):
  POST   /splits                → 201  create split            (409 PIN_COLLISION)
  GET    /splits/:pin           → 200  read split              (404 SPLIT_NOT_FOUND)
  PUT    /splits/:pin           → 200  overwrite whole document
  GET    /splits/:pin/events    → 200  text/event-stream of change notifications

There is no auth: the PIN is the only credential, and any holder may write.
"""

from __future__ import annotations

import json
import queue

from flask import Blueprint, Response, current_app, jsonify, request

from splitroom.app.extensions import change_hub, db
from splitroom.app.schemas.split_schema import (
    CreateSplitSchema,
    OverwriteSplitSchema,
    WriteOriginSchema,
)
from splitroom.app.services import record_service

splits_bp = Blueprint("splits", __name__)


def format_sse(payload: dict) -> str:
    """One server-sent event carrying `payload` as JSON."""
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


def _event_stream(pin: str, heartbeat: float):
    listener = change_hub.subscribe(pin)
    try:
        yield ": connected\n\n"
        while True:
            try:
                payload = listener.get(timeout=heartbeat)
            except queue.Empty:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(payload)
    finally:
        change_hub.unsubscribe(pin, listener)


@splits_bp.route("/", methods=["POST"])
def create_split():
    """POST /splits — Store a new split document under a client-chosen PIN."""
    data = CreateSplitSchema().load(request.get_json(force=True) or {})
    result = record_service.create_record(
        pin=data["pin"],
        document=data["data"],
        session=db.session,
    )
    db.session.commit()
    current_app.logger.info("splits: created pin=%s", result["pin"])
    return jsonify({"data": result, "warnings": []}), 201


@splits_bp.route("/<pin>", methods=["GET"])
def get_split(pin: str):
    """GET /splits/:pin — Read the current document."""
    result = record_service.get_record(pin=pin, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200


@splits_bp.route("/<pin>", methods=["PUT"])
def overwrite_split(pin: str):
    """PUT /splits/:pin — Replace the whole document and notify subscribers."""
    data = OverwriteSplitSchema().load(request.get_json(force=True) or {})
    result = record_service.overwrite_record(
        pin=pin,
        document=data["data"],
        session=db.session,
        origin=data["origin"],
    )
    db.session.commit()

    origin = WriteOriginSchema().dump(data["origin"]) if data["origin"] else None
    delivered = change_hub.publish(pin, {
        "pin": pin,
        "data": result["data"],
        "origin": origin,
    })
    current_app.logger.debug(
        "splits: pin=%s revision=%s fanned out to %s subscriber(s)",
        pin, result["revision"], delivered,
    )
    return jsonify({"data": result, "warnings": []}), 200


@splits_bp.route("/<pin>/events", methods=["GET"])
def split_events(pin: str):
    """GET /splits/:pin/events — Server-sent events, one per accepted write."""
    record_service.get_record(pin=pin, session=db.session)  # 404 before streaming
    heartbeat = current_app.config["SSE_HEARTBEAT_SECONDS"]
    return Response(
        _event_stream(pin, heartbeat),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
