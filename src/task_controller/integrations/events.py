"""In-process broadcast of controller events to read-only observers."""

import logging
import queue
import threading
import uuid
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

STATE_CHANGED = "controller:stateChanged"
PROGRESS_UPDATED = "controller:progressUpdated"
APPROVAL_REQUIRED = "controller:approvalRequired"
ACTION_COMPLETED = "controller:actionCompleted"
USAGE_WARNING = "controller:usageWarning"

Handler = Callable[[str, Any], None]

_STOP = object()


class EventBus:
    """Fire-and-forget pub/sub.

    Handlers subscribe to one event name or to ``"*"``. In asynchronous mode
    (the default) events are queued and delivered in order by a daemon
    worker, so ``publish`` never waits on a slow observer. Handler exceptions
    are logged and dropped.
    """

    def __init__(self, asynchronous: bool = True):
        self.asynchronous = asynchronous
        self._subscribers: dict[str, list[tuple[str, Handler]]] = {}
        self._lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None

    def subscribe(self, event_name: str, handler: Handler) -> str:
        subscription_id = uuid.uuid4().hex
        with self._lock:
            self._subscribers.setdefault(event_name, []).append((subscription_id, handler))
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for subscribers in self._subscribers.values():
                for i, (sub_id, _) in enumerate(subscribers):
                    if sub_id == subscription_id:
                        subscribers.pop(i)
                        return True
        return False

    def publish(self, event_name: str, payload: Any = None):
        if not self.asynchronous:
            self._deliver(event_name, payload)
            return
        self._ensure_worker()
        self._queue.put((event_name, payload))

    def close(self, timeout: float = 5.0):
        """Drain queued events and stop the worker."""
        if self._worker and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join(timeout=timeout)
        self._worker = None

    def _ensure_worker(self):
        with self._lock:
            if self._worker and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._run, name="event-bus", daemon=True
            )
            self._worker.start()

    def _run(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            event_name, payload = item
            self._deliver(event_name, payload)

    def _deliver(self, event_name: str, payload: Any):
        with self._lock:
            handlers = list(self._subscribers.get(event_name, []))
            handlers += self._subscribers.get("*", [])
        for subscription_id, handler in handlers:
            try:
                handler(event_name, payload)
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s", subscription_id, event_name
                )
