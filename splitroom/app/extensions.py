"""
extensions.py — Flask extension singletons.

Initialises SQLAlchemy and marshmallow as module-level objects so they can be
imported anywhere without creating circular dependencies.

Pattern:
    1. Create the extension object here (no app attached yet).
    2. Call init_app(app) inside the app factory in app/__init__.py.
    3. Import `db`, `ma` or `change_hub` from here wherever needed.

    from splitroom.app.extensions import change_hub, db, ma

Do not pass the app object directly to SQLAlchemy() or Marshmallow() at
import time — that would prevent running tests with a separate test app.
"""

from flask_marshmallow import Marshmallow
from flask_sqlalchemy import SQLAlchemy

from splitroom.app.services.change_hub import ChangeHub

db = SQLAlchemy()

# Marshmallow instance — available for SQLAlchemy model serialization helpers.
#
# IMPORTANT — schema inheritance rule:
#   All validation Schema classes (in app/schemas/) must inherit from
#   marshmallow.Schema directly, NOT from ma.Schema. ma.Schema requires an
#   active Flask application context, and the live-split client core loads
#   and dumps documents with no Flask app at all.
ma = Marshmallow()

# Process-wide fan-out of change notifications for the /events stream.
# Not shared between worker processes: run the record store with a single
# worker (threads are fine) so every subscriber sees every write.
change_hub = ChangeHub()
