"""Live query layer: change notification, reactive operators, subscriptions."""

from cartstore.live.notifier import ChangeNotifier, Listener
from cartstore.live.query import LiveQuery, Subscription, SubscriptionClosed, watch
from cartstore.live.reactive import (
    CompositeDisposable,
    Disposable,
    KeyedSubscriptions,
    Observable,
    Subject,
    combine_latest,
    switch_by_key,
)

__all__ = [
    "ChangeNotifier", "Listener",
    "LiveQuery", "Subscription", "SubscriptionClosed", "watch",
    "CompositeDisposable", "Disposable", "KeyedSubscriptions",
    "Observable", "Subject", "combine_latest", "switch_by_key",
]
