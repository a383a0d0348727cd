"""Live queries: re-run a read whenever one of its tables is committed to.

All query runs and emissions happen on the notifier's dispatcher thread, so
snapshots of one ``LiveQuery`` are always delivered in the order they were
computed.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional

from cartstore.live.notifier import Listener
from cartstore.live.reactive import Disposable, Observable, Observer, Subject

if TYPE_CHECKING:
    from cartstore.db.database import Database

logger = logging.getLogger(__name__)


class LiveQuery(Observable):
    """Observable snapshot of ``run()``, refreshed on changes to ``tables``.

    Subscribers share one table listener and one run per change.  The
    listener exists only while at least one subscriber is attached.  A
    failing run ends every current subscriber with ``on_error``.
    """

    def __init__(
        self,
        db: "Database",
        tables: Iterable[str],
        run: Callable[[], Any],
        name: str = "live-query",
        distinct: bool = True,
    ):
        self._db = db
        self.tables = frozenset(tables)
        self._run = run
        self.name = name
        self._distinct = distinct
        self._lock = threading.Lock()
        self._subject: Optional[Subject] = None
        self._listener: Optional[Listener] = None
        self._refs = 0

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return self._refs

    def _subscribe(self, observer: Observer) -> Disposable:
        notifier = self._db.notifier
        with self._lock:
            subject = self._subject
            connect = subject is None
            if subject is None:
                subject = self._subject = Subject(replay=True)
                self._listener = notifier.listen(
                    self.tables, lambda changed, s=subject: self._refresh(s)
                )
            self._refs += 1

        notifier.call_soon(lambda: subject.attach(observer))
        if connect:
            logger.debug("%s connected to %s", self.name, sorted(self.tables))
            notifier.call_soon(lambda: self._refresh(subject))

        def release() -> None:
            observer.stop()
            subject.detach(observer)
            self._release(subject)

        return Disposable(release)

    def _release(self, subject: Subject) -> None:
        listener = None
        with self._lock:
            if subject is not self._subject:
                return
            self._refs -= 1
            if self._refs == 0:
                listener, self._listener = self._listener, None
                self._subject = None
        if listener is not None:
            listener.remove()
            logger.debug("%s disconnected", self.name)

    def _refresh(self, subject: Subject) -> None:
        with self._lock:
            if subject is not self._subject:
                return
        try:
            value = self._run()
        except Exception as e:
            logger.warning("%s failed; ending its subscribers: %s", self.name, e)
            self._teardown(subject)
            subject.on_error(e)
            return
        if self._distinct and subject.has_value and subject.latest == value:
            return
        subject.on_next(value)

    def _teardown(self, subject: Subject) -> None:
        listener = None
        with self._lock:
            if subject is self._subject:
                listener, self._listener = self._listener, None
                self._subject = None
                self._refs = 0
        if listener is not None:
            listener.remove()


class SubscriptionClosed(Exception):
    """Raised by :meth:`Subscription.next` once the subscription is cancelled."""


_END = object()


class Subscription:
    """Blocking consumer of an Observable: a cancellable iterator of snapshots.

    Usage::

        with watch(repo.watch_all()) as sub:
            first = sub.next(timeout=1.0)
            for snapshot in sub:
                ...
    """

    def __init__(self, source: Observable):
        self._queue: "queue.Queue[tuple[str, Any]]" = queue.Queue()
        self._lock = threading.Lock()
        self._cancelled = False
        self._finished = False
        self._handle: Optional[Disposable] = None
        handle = source.subscribe(self._on_next, self._on_error)
        with self._lock:
            self._handle = handle
            release = self._cancelled or self._finished
        if release:
            handle.dispose()

    # -- upstream callbacks ----------------------------------------------------

    def _on_next(self, value: Any) -> None:
        with self._lock:
            if self._cancelled or self._finished:
                return
            self._queue.put(("next", value))

    def _on_error(self, error: BaseException) -> None:
        with self._lock:
            if self._cancelled or self._finished:
                return
            self._finished = True
            self._queue.put(("error", error))
            handle = self._handle
        if handle is not None:
            handle.dispose()

    # -- consumer API ----------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def next(self, timeout: Optional[float] = None) -> Any:
        """Block for the next snapshot.

        Raises ``TimeoutError`` when none arrives in ``timeout`` seconds, the
        terminal error if the sequence failed, and :class:`SubscriptionClosed`
        after :meth:`cancel`.
        """
        if self._cancelled:
            raise SubscriptionClosed("Subscription was cancelled")
        try:
            kind, payload = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"No snapshot within {timeout}s") from None
        if kind == "end":
            self._queue.put((kind, payload))
            raise SubscriptionClosed("Subscription was cancelled")
        if kind == "error":
            self._queue.put((kind, payload))
            raise payload
        return payload

    def wait_for(self, predicate: Callable[[Any], bool], timeout: float = 5.0) -> Any:
        """Consume snapshots until one satisfies ``predicate``; return it."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"No matching snapshot within {timeout}s")
            snapshot = self.next(timeout=remaining)
            if predicate(snapshot):
                return snapshot

    def cancel(self) -> None:
        """Stop delivery and release upstream listeners.  Idempotent."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
            self._queue.put(("end", _END))
            handle = self._handle
        if handle is not None:
            handle.dispose()

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                yield self.next()
            except SubscriptionClosed:
                return

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()


def watch(source: Observable) -> Subscription:
    """Subscribe to ``source`` and return a blocking :class:`Subscription`."""
    return Subscription(source)
