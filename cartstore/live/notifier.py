"""Table-change notifier: delivers commit notifications on its own thread.

Writers only enqueue; listeners always run on the dispatcher thread, never
inside the writer's transaction.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[frozenset[str]], None]

_STOP = object()


class Listener:
    """Handle returned by :meth:`ChangeNotifier.listen`."""

    def __init__(self, notifier: "ChangeNotifier", listener_id: int, tables: frozenset[str]):
        self._notifier = notifier
        self.id = listener_id
        self.tables = tables

    def remove(self) -> None:
        """Stop receiving notifications.  Idempotent."""
        self._notifier._remove(self.id)


class ChangeNotifier:
    """Fan-out of ``{table names}`` change events to interested listeners."""

    def __init__(self, name: str = "cartstore-notifier"):
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._listeners: dict[int, tuple[frozenset[str], ChangeCallback]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    # -- registration ----------------------------------------------------------

    def listen(self, tables: Iterable[str], callback: ChangeCallback) -> Listener:
        watched = frozenset(tables)
        with self._lock:
            listener_id = next(self._ids)
            self._listeners[listener_id] = (watched, callback)
        logger.debug("Listener %d registered for %s", listener_id, sorted(watched))
        return Listener(self, listener_id, watched)

    def _remove(self, listener_id: int) -> None:
        with self._lock:
            removed = self._listeners.pop(listener_id, None)
        if removed is not None:
            logger.debug("Listener %d removed", listener_id)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    # -- publishing ------------------------------------------------------------

    def publish(self, tables: Iterable[str]) -> None:
        """Queue a change to ``tables`` for asynchronous delivery."""
        changed = frozenset(tables)
        if not changed or self._closed:
            return
        self._queue.put(changed)

    def call_soon(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on the dispatcher thread, after queued changes."""
        if not self._closed:
            self._queue.put(callback)

    def close(self, timeout: float = 2.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    @property
    def is_dispatch_thread(self) -> bool:
        return threading.current_thread() is self._thread

    # -- dispatch loop ---------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if callable(item):
                try:
                    item()
                except Exception:
                    logger.exception("Scheduled callback failed")
                continue
            self._deliver(item)  # type: ignore[arg-type]

    def _deliver(self, changed: frozenset[str]) -> None:
        with self._lock:
            targets = [
                (lid, cb) for lid, (tables, cb) in self._listeners.items() if tables & changed
            ]
        for listener_id, callback in targets:
            with self._lock:
                if listener_id not in self._listeners:
                    continue
            try:
                callback(changed)
            except Exception:
                logger.exception("Listener %d failed handling change to %s",
                                  listener_id, sorted(changed))
