"""Live subscription lifecycle for dashboard views.

A view opens one subscription per topic, folds every full-snapshot delivery
into its own ``ComplianceSnapshot`` and disposes everything when it goes away.
Deliveries arriving after disposal are dropped.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .schemas import Record
from .snapshot import ComplianceSnapshot

logger = logging.getLogger(__name__)

Disposer = Callable[[], None]
Listener = Callable[..., None]
# subscribe(topic, listener) -> disposer, as exposed by LiveStore and SubscriptionManager
SubscribeFn = Callable[[str, Listener], Disposer]


class SubscriptionError(Exception):
    """One or more topics could not be subscribed.

    ``subscriptions`` holds the topics that did succeed; the caller owns them
    and must dispose them.
    """

    def __init__(self, failures: Dict[str, BaseException], subscriptions: "SubscriptionSet"):
        self.failures = failures
        self.subscriptions = subscriptions
        super().__init__(f"Failed to subscribe to topic(s): {', '.join(failures)}")


class Subscription:
    """A single topic subscription whose listener goes inert once disposed."""

    def __init__(self, topic: str, callback: Callable[..., None]):
        self.topic = topic
        self.active = True
        self._callback = callback
        self._disposer: Optional[Disposer] = None

    def deliver(self, *payload: Any) -> None:
        if not self.active:
            logger.debug("Dropping late delivery for disposed topic %s", self.topic)
            return
        self._callback(self.topic, *payload)

    def bind(self, disposer: Disposer) -> None:
        self._disposer = disposer

    def dispose(self) -> None:
        if not self.active:
            return
        self.active = False
        disposer, self._disposer = self._disposer, None
        if disposer is None:
            return
        try:
            disposer()
        except Exception:
            logger.exception("Error disposing subscription to %s", self.topic)


class SubscriptionSet:
    """Disposer for a group of subscriptions. Calling it twice is harmless."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()):
        self._subscriptions: List[Subscription] = list(subscriptions)
        self._disposed = False

    def add(self, subscription: Subscription) -> None:
        if self._disposed:
            subscription.dispose()
            return
        self._subscriptions.append(subscription)

    @property
    def topics(self) -> List[str]:
        return [subscription.topic for subscription in self._subscriptions]

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose_all(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for subscription in self._subscriptions:
            subscription.dispose()

    __call__ = dispose_all

    def __len__(self) -> int:
        return len(self._subscriptions)


def open_subscriptions(
    subscribe: SubscribeFn,
    topics: Sequence[str],
    on_each_update: Callable[..., None]
) -> SubscriptionSet:
    """Subscribe to every topic and route deliveries to ``on_each_update(topic, *payload)``.

    All topics are attempted even if some fail; failures raise
    ``SubscriptionError`` carrying the successful part of the set.
    """
    subscriptions = SubscriptionSet()
    failures: Dict[str, BaseException] = {}

    for topic in topics:
        subscription = Subscription(topic, on_each_update)
        try:
            disposer = subscribe(topic, subscription.deliver)
        except Exception as e:
            logger.error("Failed to subscribe to %s: %s", topic, e)
            subscription.active = False
            failures[topic] = e
            continue
        subscription.bind(disposer)
        subscriptions.add(subscription)

    if failures:
        raise SubscriptionError(failures, subscriptions)

    return subscriptions


class ViewSession:
    """One activation of a view: its subscriptions and its private snapshot."""

    def __init__(
        self,
        source,
        topics: Optional[Sequence[str]] = None,
        on_change: Optional[Callable[[ComplianceSnapshot], None]] = None
    ):
        self.source = source
        self.topics = tuple(topics) if topics is not None else ComplianceSnapshot.topics()
        self.on_change = on_change
        self.generation = 0
        self._subscriptions: Optional[SubscriptionSet] = None
        self._snapshot = ComplianceSnapshot()
        self._delivered: set = set()

    @property
    def active(self) -> bool:
        return self._subscriptions is not None and not self._subscriptions.disposed

    @property
    def snapshot(self) -> ComplianceSnapshot:
        return self._snapshot

    @property
    def ready(self) -> bool:
        """True once every topic has delivered at least one snapshot."""
        return self._delivered.issuperset(self.topics)

    def activate(self) -> "ViewSession":
        # A re-activation must never leave the previous generation subscribed
        self.deactivate()
        self.generation += 1
        generation = self.generation
        self._snapshot = ComplianceSnapshot()
        self._delivered = set()

        def apply(topic: str, records: Iterable[Record]) -> None:
            if generation != self.generation:
                return
            self._snapshot = self._snapshot.with_topic(topic, records)
            self._delivered.add(topic)
            if self.on_change is not None:
                self.on_change(self._snapshot)

        try:
            self._subscriptions = open_subscriptions(self.source.subscribe, self.topics, apply)
        except SubscriptionError as e:
            self._subscriptions = e.subscriptions
            raise
        logger.info("View session %d active on %s", generation, ", ".join(self.topics))
        return self

    def deactivate(self) -> None:
        if self._subscriptions is None:
            return
        subscriptions, self._subscriptions = self._subscriptions, None
        subscriptions.dispose_all()
        logger.info("View session %d disposed", self.generation)

    def __enter__(self) -> "ViewSession":
        return self.activate()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.deactivate()


class _SharedTopic:
    def __init__(self, topic: str):
        self.topic = topic
        self.listeners: Dict[object, Listener] = {}
        self.last: Optional[List[Record]] = None
        self.upstream: Optional[Disposer] = None

    def publish(self, records: Iterable[Record]) -> None:
        self.last = list(records)
        for listener in list(self.listeners.values()):
            try:
                listener(self.last)
            except Exception:
                logger.exception("Listener for %s failed", self.topic)


class SubscriptionManager:
    """Reference-counted topic subscriptions shared by simultaneously open views.

    Exposes the same ``subscribe(topic, listener)`` call as the store, holds a
    single upstream subscription per topic and replays the latest snapshot to
    late joiners.
    """

    def __init__(self, source):
        self.source = source
        self._topics: Dict[str, _SharedTopic] = {}

    def subscriber_count(self, topic: str) -> int:
        shared = self._topics.get(topic)
        return len(shared.listeners) if shared else 0

    def subscribe(self, topic: str, listener: Listener) -> Disposer:
        shared = self._topics.get(topic)
        if shared is None:
            shared = _SharedTopic(topic)
            # Raises before anything is registered if the upstream fails
            shared.upstream = self.source.subscribe(topic, shared.publish)
            self._topics[topic] = shared
            logger.info("Opened shared subscription to %s", topic)

        token = object()
        shared.listeners[token] = listener
        if shared.last is not None:
            # The disposer must reach the caller even if the replay fails
            try:
                listener(shared.last)
            except Exception:
                logger.exception("Listener for %s failed on replay", topic)

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            shared.listeners.pop(token, None)
            if shared.listeners or self._topics.get(topic) is not shared:
                return
            del self._topics[topic]
            if shared.upstream is not None:
                shared.upstream()
            logger.info("Closed shared subscription to %s", topic)

        return release
