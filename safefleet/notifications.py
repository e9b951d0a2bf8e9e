"""Transient user notifications fed by live change events."""
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from .config import config
from .schemas import Infraction, Message, Record, TripReport
from .store import ADDED
from .sync import SubscriptionSet, open_subscriptions

logger = logging.getLogger(__name__)

SEVERITIES = ("success", "error", "info", "warning")


@dataclass
class Notification:
    id: str
    severity: str
    message: str
    duration_ms: int
    created_at: float

    @property
    def expires_at(self) -> Optional[float]:
        """None for sticky notifications (non-positive duration)."""
        if self.duration_ms <= 0:
            return None
        return self.created_at + self.duration_ms / 1000

    def to_dict(self) -> Dict:
        return asdict(self)


class NotificationQueue:
    """Process-wide queue of visible notifications and the unread counter."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._items: List[Notification] = []
        self._hooks: Dict[object, Callable[[Notification], None]] = {}
        self.unread_count = 0

    def push(self, severity: str, message: str, duration_ms: Optional[int] = None) -> Notification:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown notification severity: {severity}")
        if duration_ms is None:
            duration_ms = config.notification_duration_ms

        notification = Notification(
            id=uuid.uuid4().hex[:8],
            severity=severity,
            message=message,
            duration_ms=duration_ms,
            created_at=self.clock()
        )
        self._items.append(notification)
        self.unread_count += 1

        for hook in list(self._hooks.values()):
            try:
                hook(notification)
            except Exception:
                logger.exception("Notification hook failed")
        return notification

    def dismiss(self, notification_id: str) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notification_id]
        return len(self._items) != before

    def active(self, now: Optional[float] = None) -> List[Notification]:
        """Visible notifications; expired ones are dropped."""
        if now is None:
            now = self.clock()
        self._items = [
            n for n in self._items
            if n.expires_at is None or n.expires_at > now
        ]
        return list(self._items)

    def clear_unread(self) -> None:
        self.unread_count = 0

    def clear(self) -> None:
        self._items = []
        self.unread_count = 0

    def add_hook(self, hook: Callable[[Notification], None]) -> Callable[[], None]:
        token = object()
        self._hooks[token] = hook

        def remove() -> None:
            self._hooks.pop(token, None)
        return remove


@dataclass
class NotificationRule:
    predicate: Callable[[Record], bool]
    severity: str = "info"
    format: Optional[Callable[[Record], str]] = None


class NotificationBridge:
    """Turns ``added`` change events into notifications, per registered topic rule."""

    def __init__(self, queue: NotificationQueue, current_user_id: Optional[str] = None,
                 register_defaults: bool = True):
        self.queue = queue
        self.current_user_id = current_user_id
        self.rules: Dict[str, NotificationRule] = {}
        if register_defaults:
            self.register_defaults()

    def register(self, topic: str, predicate: Callable[[Record], bool],
                 severity: str = "info", message: Optional[Callable[[Record], str]] = None) -> None:
        self.rules[topic] = NotificationRule(predicate=predicate, severity=severity, format=message)

    def unregister(self, topic: str) -> None:
        self.rules.pop(topic, None)

    def register_defaults(self) -> None:
        self.register(
            "infractions",
            lambda record: True,
            severity="warning",
            message=_infraction_message
        )
        self.register(
            "reports",
            lambda record: True,
            severity="info",
            message=_report_message
        )
        self.register(
            "messages",
            self._addressed_to_current_user,
            severity="info",
            message=_direct_message
        )

    def _addressed_to_current_user(self, record: Record) -> bool:
        return (
            self.current_user_id is not None and
            getattr(record, "receiver_id", None) == self.current_user_id
        )

    def on_change(self, topic: str, change_type: str, record: Record) -> Optional[Notification]:
        if change_type != ADDED:
            return None
        rule = self.rules.get(topic)
        if rule is None:
            return None
        try:
            relevant = rule.predicate(record)
        except Exception:
            logger.exception("Notification predicate for %s failed", topic)
            return None
        if not relevant:
            return None
        text = rule.format(record) if rule.format else f"New {topic} record {record.id}"
        return self.queue.push(rule.severity, text)

    def attach(self, store) -> SubscriptionSet:
        """Listen to the store's change events for every registered topic."""
        return open_subscriptions(store.subscribe_changes, list(self.rules), self.on_change)


def _infraction_message(record: Infraction) -> str:
    kind = record.declared_classification or "Other"
    return f"New infraction ({kind}) recorded on {record.date}"


def _report_message(record: TripReport) -> str:
    return f"New trip report for driver {record.driver_id} on {record.date}"


def _direct_message(record: Message) -> str:
    return f"New message from {record.sender_id}"


# Shared by the API and the bridge
notification_queue = NotificationQueue()
