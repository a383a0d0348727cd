"""Minimal push-based reactive primitives.

``Observable`` / ``Subject`` carry snapshots; ``combine_latest`` re-emits when
any input changes; ``switch_by_key`` replaces per-key inner subscriptions
whenever its outer sequence produces a new snapshot.  An error is terminal:
after ``on_error`` an observer receives nothing more.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Hashable, Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

OnNext = Callable[[Any], None]
OnError = Callable[[BaseException], None]

_MISSING = object()


class Disposable:
    """Runs ``action`` once, on the first :meth:`dispose`."""

    def __init__(self, action: Optional[Callable[[], None]] = None):
        self._action = action
        self._lock = threading.Lock()
        self.disposed = False

    def dispose(self) -> None:
        with self._lock:
            if self.disposed:
                return
            self.disposed = True
            action, self._action = self._action, None
        if action is not None:
            action()


class CompositeDisposable(Disposable):
    """Disposes every member; members added after disposal are disposed at once."""

    def __init__(self, *items: Disposable):
        super().__init__(self._dispose_items)
        self._items: list[Disposable] = list(items)

    def add(self, item: Disposable) -> None:
        with self._lock:
            if not self.disposed:
                self._items.append(item)
                return
        item.dispose()

    def _dispose_items(self) -> None:
        items, self._items = self._items, []
        for item in items:
            item.dispose()


class Observer:
    """Wraps callbacks; ignores everything after ``stop()`` or a terminal error."""

    def __init__(self, on_next: OnNext, on_error: Optional[OnError] = None):
        self._on_next = on_next
        self._on_error = on_error
        self.stopped = False

    def on_next(self, value: Any) -> None:
        if not self.stopped:
            self._on_next(value)

    def on_error(self, error: BaseException) -> None:
        if self.stopped:
            return
        self.stopped = True
        if self._on_error is None:
            logger.error("Unhandled error in live sequence: %r", error)
            return
        self._on_error(error)

    def stop(self) -> None:
        self.stopped = True


class Observable:
    """A sequence of snapshots delivered to subscribers."""

    def subscribe(self, on_next: OnNext, on_error: Optional[OnError] = None) -> Disposable:
        observer = Observer(on_next, on_error)
        handle = self._subscribe(observer)

        def release() -> None:
            observer.stop()
            handle.dispose()

        return Disposable(release)

    def _subscribe(self, observer: Observer) -> Disposable:
        raise NotImplementedError

    @staticmethod
    def create(subscribe: Callable[[Observer], Disposable]) -> "Observable":
        return _AnonymousObservable(subscribe)


class _AnonymousObservable(Observable):
    def __init__(self, subscribe: Callable[[Observer], Disposable]):
        self._subscribe_fn = subscribe

    def _subscribe(self, observer: Observer) -> Disposable:
        return self._subscribe_fn(observer)


class Subject(Observable):
    """Multicast to all attached observers.

    With ``replay`` the latest value is handed to each newly attached
    observer.  ``on_error`` is terminal and also reaches late subscribers.
    """

    def __init__(self, replay: bool = False):
        self._replay = replay
        self._lock = threading.Lock()
        self._observers: list[Observer] = []
        self._latest: Any = _MISSING
        self._error: Optional[BaseException] = None

    @property
    def has_value(self) -> bool:
        return self._latest is not _MISSING

    @property
    def latest(self) -> Any:
        """Most recent value (replaying subjects only), or None."""
        return None if self._latest is _MISSING else self._latest

    def on_next(self, value: Any) -> None:
        with self._lock:
            if self._error is not None:
                return
            if self._replay:
                self._latest = value
            targets = list(self._observers)
        for observer in targets:
            observer.on_next(value)

    def on_error(self, error: BaseException) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            targets, self._observers = self._observers, []
        for observer in targets:
            observer.on_error(error)

    def attach(self, observer: Observer) -> None:
        with self._lock:
            if observer.stopped:
                return
            error = self._error
            if error is None:
                self._observers.append(observer)
            latest = self._latest
        if error is not None:
            observer.on_error(error)
        elif latest is not _MISSING:
            observer.on_next(latest)

    def detach(self, observer: Observer) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def _subscribe(self, observer: Observer) -> Disposable:
        self.attach(observer)
        return Disposable(lambda: self.detach(observer))


def combine_latest(sources: Sequence[Observable], combiner: Callable[..., Any]) -> Observable:
    """Emit ``combiner(*latest)`` whenever any source emits.

    Nothing is emitted until every source has produced a value.  With no
    sources, ``combiner()`` is emitted once.  The first error from any source
    is forwarded and the remaining sources are released.
    """
    sources = list(sources)

    def subscribe(observer: Observer) -> Disposable:
        if not sources:
            _emit(observer, combiner)
            return Disposable()

        lock = threading.Lock()
        latest: list[Any] = [_MISSING] * len(sources)
        handles = CompositeDisposable()

        def fail(error: BaseException) -> None:
            handles.dispose()
            observer.on_error(error)

        def make_on_next(index: int) -> OnNext:
            def on_next(value: Any) -> None:
                with lock:
                    latest[index] = value
                    if any(v is _MISSING for v in latest):
                        return
                    values = list(latest)
                _emit(observer, combiner, *values)
            return on_next

        for i, source in enumerate(sources):
            handles.add(source.subscribe(make_on_next(i), fail))
        return handles

    return Observable.create(subscribe)


class KeyedSubscriptions:
    """Arena of active inner subscriptions, one handle per parent key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[Hashable, Disposable] = {}
        self.closed = False

    def replace(self, key: Hashable, handle: Disposable) -> None:
        """Install ``handle`` for ``key``, disposing whatever it replaces.

        Once the arena is closed, incoming handles are disposed immediately.
        """
        with self._lock:
            if self.closed:
                stale = handle
            else:
                stale = self._handles.get(key)
                self._handles[key] = handle
                if stale is handle:
                    stale = None
        if stale is not None:
            stale.dispose()

    def retain(self, keys: Iterable[Hashable]) -> None:
        """Dispose every handle whose key is not in ``keys``."""
        keep = set(keys)
        with self._lock:
            stale = [k for k in self._handles if k not in keep]
            dropped = [self._handles.pop(k) for k in stale]
        for handle in dropped:
            handle.dispose()

    def dispose_all(self) -> None:
        with self._lock:
            dropped, self._handles = list(self._handles.values()), {}
        for handle in dropped:
            handle.dispose()

    def close(self) -> None:
        """Dispose everything and refuse later handles."""
        with self._lock:
            self.closed = True
        self.dispose_all()

    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class _SwitchByKey:
    def __init__(
        self,
        observer: Observer,
        keys_of: Callable[[Any], Iterable[Hashable]],
        project: Callable[[Hashable], Observable],
        combiner: Callable[[dict[Hashable, Any]], Any],
    ):
        self._observer = observer
        self._keys_of = keys_of
        self._project = project
        self._combiner = combiner
        self._lock = threading.Lock()
        self._generation = 0
        self._keys: list[Hashable] = []
        self._latest: dict[Hashable, Any] = {}
        self.arena = KeyedSubscriptions()

    def on_outer(self, snapshot: Any) -> None:
        keys = list(dict.fromkeys(self._keys_of(snapshot)))
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._keys = keys
            self._latest = {}
        self.arena.retain(keys)
        if not keys:
            _emit(self._observer, self._combiner, {})
            return
        for key in keys:
            if self._observer.stopped:
                return
            handle = self._project(key).subscribe(self._on_inner(generation, key), self.fail)
            self.arena.replace(key, handle)

    def _on_inner(self, generation: int, key: Hashable) -> OnNext:
        def on_next(value: Any) -> None:
            with self._lock:
                if generation != self._generation:
                    return
                self._latest[key] = value
                if len(self._latest) < len(self._keys):
                    return
                values = {k: self._latest[k] for k in self._keys}
            _emit(self._observer, self._combiner, values)
        return on_next

    def fail(self, error: BaseException) -> None:
        self.arena.close()
        self._observer.on_error(error)


def switch_by_key(
    outer: Observable,
    keys_of: Callable[[Any], Iterable[Hashable]],
    project: Callable[[Hashable], Observable],
    combiner: Callable[[dict[Hashable, Any]], Any],
) -> Observable:
    """Switch-to-latest over a keyed fan-out.

    Each outer snapshot yields a list of parent keys.  Every key gets a fresh
    inner subscription to ``project(key)``; the previous handle for that key,
    and handles for keys that disappeared, are disposed.  Once every current
    inner has produced a value, ``combiner({key: value})`` is emitted, and
    again whenever any current inner emits.  Values from superseded inners
    are dropped.
    """

    def subscribe(observer: Observer) -> Disposable:
        state = _SwitchByKey(observer, keys_of, project, combiner)
        outer_handle = outer.subscribe(state.on_outer, state.fail)
        return CompositeDisposable(outer_handle, Disposable(state.arena.close))

    return Observable.create(subscribe)


def _emit(observer: Observer, fn: Callable[..., Any], *args: Any) -> None:
    try:
        value = fn(*args)
    except Exception as e:
        observer.on_error(e)
        return
    observer.on_next(value)
