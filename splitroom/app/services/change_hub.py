"""
services/change_hub.py — In-process fan-out of split change notifications.

Every successful overwrite is published to the PIN's subscribers, including
the writer's own stream; echo handling is the client's job. Each subscriber
owns an unbounded queue, so a slow reader never blocks a writer.

Layer rules:
  - No Flask imports. Thread-safe; called from request threads.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)


class ChangeHub:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[queue.Queue]] = defaultdict(list)

    def subscribe(self, pin: str) -> queue.Queue:
        """Registers a new listener for `pin` and returns its queue."""
        listener: queue.Queue = queue.Queue()
        with self._lock:
            self._subscribers[pin].append(listener)
        logger.debug("change_hub: subscriber added for pin=%s", pin)
        return listener

    def unsubscribe(self, pin: str, listener: queue.Queue) -> None:
        """Removes `listener`. Safe to call more than once."""
        with self._lock:
            listeners = self._subscribers.get(pin)
            if not listeners or listener not in listeners:
                return
            listeners.remove(listener)
            if not listeners:
                del self._subscribers[pin]
        logger.debug("change_hub: subscriber removed for pin=%s", pin)

    def publish(self, pin: str, payload: dict) -> int:
        """Delivers `payload` to every listener of `pin`. Returns the fan-out count."""
        with self._lock:
            listeners = list(self._subscribers.get(pin, ()))
        for listener in listeners:
            listener.put(payload)
        return len(listeners)

    def subscriber_count(self, pin: str) -> int:
        with self._lock:
            return len(self._subscribers.get(pin, ()))
