"""
Process-wide fan-out of install progress and console output.

Every subscriber owns a bounded queue and a delivery thread, so ``publish``
only enqueues and returns. Events for one key reach one subscriber in the
order they were published. Nothing is replayed to late subscribers.
"""

from __future__ import annotations
import itertools
import queue
import threading
from typing import Any, Callable, Dict, Optional
from .logging_setup import get_logger

log = get_logger("reforger.panel.events")

INSTALL_PROGRESS = "install-progress"
CONSOLE_OUTPUT = "console-output"

Handler = Callable[[Dict[str, Any]], None]
_STOP = object()


class _Subscriber:
    def __init__(self, token: int, category: str, key: Optional[str], handler: Handler, maxsize: int):
        self.token = token
        self.category = category
        self.key = key
        self.handler = handler
        self.queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._thread = threading.Thread(
            target=self._deliver, name=f"events-{category}-{key or '*'}-{token}", daemon=True
        )
        self._thread.start()

    def offer(self, event: Dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                log.warning("Subscriber %s for %s/%s is lagging, dropped %d event(s)",
                            self.token, self.category, self.key or "*", self.dropped)

    def close(self) -> None:
        # sentinel must get through even when the queue is full
        while True:
            try:
                self.queue.put_nowait(_STOP)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    pass

    def _deliver(self) -> None:
        while True:
            item = self.queue.get()
            if item is _STOP:
                return
            try:
                self.handler(item)
            except Exception:
                log.exception("Event handler for %s/%s raised", self.category, self.key or "*")


class EventBroadcaster:
    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        # category -> key (None = every key) -> token -> subscriber
        self._subs: Dict[str, Dict[Optional[str], Dict[int, _Subscriber]]] = {}

    def subscribe(self, category: str, key: Optional[str], handler: Handler) -> Callable[[], None]:
        with self._lock:
            token = next(self._tokens)
            sub = _Subscriber(token, category, key, handler, self.queue_size)
            self._subs.setdefault(category, {}).setdefault(key, {})[token] = sub
        log.debug("Subscribed %s to %s/%s", token, category, key or "*")

        def unsubscribe() -> None:
            self._remove(category, key, token)

        return unsubscribe

    def _remove(self, category: str, key: Optional[str], token: int) -> None:
        with self._lock:
            by_key = self._subs.get(category, {})
            subs = by_key.get(key)
            if not subs or token not in subs:
                return
            sub = subs.pop(token)
            if not subs:
                del by_key[key]
            if not by_key:
                self._subs.pop(category, None)
        sub.close()
        log.debug("Unsubscribed %s from %s/%s", token, category, key or "*")

    def publish(self, category: str, key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            by_key = self._subs.get(category)
            if not by_key:
                return
            targets = list(by_key.get(key, {}).values()) + list(by_key.get(None, {}).values())
        for sub in targets:
            sub.offer(payload)

    def subscriber_count(self, category: str, key: Optional[str] = None) -> int:
        with self._lock:
            return len(self._subs.get(category, {}).get(key, {}))
