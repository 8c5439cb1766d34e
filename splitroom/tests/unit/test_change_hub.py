"""
tests/unit/test_change_hub.py — In-process fan-out behind the /events stream.
"""

from __future__ import annotations

from splitroom.app.services.change_hub import ChangeHub


def test_publish_reaches_every_subscriber_of_the_pin():
    hub = ChangeHub()
    first = hub.subscribe("4821")
    second = hub.subscribe("4821")
    other = hub.subscribe("1111")

    assert hub.publish("4821", {"n": 1}) == 2
    assert first.get_nowait() == {"n": 1}
    assert second.get_nowait() == {"n": 1}
    assert other.empty()


def test_publish_without_subscribers():
    assert ChangeHub().publish("4821", {}) == 0


def test_unsubscribe_is_idempotent():
    hub = ChangeHub()
    listener = hub.subscribe("4821")
    hub.unsubscribe("4821", listener)
    hub.unsubscribe("4821", listener)

    assert hub.subscriber_count("4821") == 0
    assert hub.publish("4821", {}) == 0


def test_unsubscribe_keeps_other_listeners():
    hub = ChangeHub()
    keep = hub.subscribe("4821")
    drop = hub.subscribe("4821")
    hub.unsubscribe("4821", drop)

    hub.publish("4821", {"n": 2})
    assert keep.get_nowait() == {"n": 2}
    assert drop.empty()
