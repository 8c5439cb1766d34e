"""
tests/integration/conftest.py — Fixtures and helpers for the record-store API tests.

Design:
  - The app is created once per session using create_app("testing").
    TestingConfig points at in-memory SQLite unless TEST_DATABASE_URL is set,
    so the suite runs without a database server.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted so tests are isolated.

Helper functions (not fixtures):
  - wire_document(...)      → camelCase document body
  - make_split(client, ...) → record dict from POST /splits
  - put_split(client, ...)  → HTTP response from PUT /splits/:pin
"""

from __future__ import annotations

import pytest

from splitroom.app import create_app
from splitroom.app.extensions import db as _db


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """Deletes all rows after every test in the integration suite."""
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        from sqlalchemy import text
        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM splits"))
            conn.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def wire_document(
    users: list[dict] | None = None,
    items: list[dict] | None = None,
    host_id: str = "u-host",
    status: str = "waiting",
) -> dict:
    """Builds a camelCase document. Defaults to a host and one unassigned item."""
    if users is None:
        users = [{"id": "u-host", "name": "Hana", "color": "#112233"}]
    if items is None:
        items = [{"id": "i1", "name": "Pizza", "price": "20.00", "quantity": 2, "assignedTo": []}]
    return {"items": items, "users": users, "hostId": host_id, "status": status}


def make_split(client, pin: str = "4821", document: dict | None = None) -> dict:
    """Creates a split and returns the record dict."""
    resp = client.post(
        "/api/v1/splits/",
        json={"pin": pin, "data": document or wire_document()},
    )
    assert resp.status_code == 201, f"make_split failed: {resp.get_json()}"
    return resp.get_json()["data"]


def put_split(client, pin: str, document: dict, origin: dict | None = None):
    """Overwrites a split. Returns the HTTP response."""
    body: dict = {"data": document}
    if origin is not None:
        body["origin"] = origin
    return client.put(f"/api/v1/splits/{pin}", json=body)
