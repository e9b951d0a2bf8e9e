"""Process-wide service instances shared by the HTTP routes and the sockets."""
import asyncio
import logging
from typing import Optional

from .config import config
from .notifications import NotificationBridge, notification_queue
from .seed import load_seed_data
from .snapshot import ComplianceSnapshot
from .store import LiveStore
from .sync import SubscriptionManager, SubscriptionSet
from .wsmanager import ConnectionManager

logger = logging.getLogger(__name__)

store = LiveStore()
shared_subscriptions = SubscriptionManager(store)
bridge = NotificationBridge(notification_queue, current_user_id=config.current_user_id)

dashboard_connections = ConnectionManager("dashboard")
notification_connections = ConnectionManager("notifications")

_loop: Optional[asyncio.AbstractEventLoop] = None
_bridge_subscriptions: Optional[SubscriptionSet] = None
_remove_broadcast_hook = None


def load_snapshot() -> ComplianceSnapshot:
    """Point-read every aggregated collection once."""
    return ComplianceSnapshot.from_collections({
        topic: store.get_all(topic) for topic in ComplianceSnapshot.topics()
    })


def _broadcast_notification(notification) -> None:
    if _loop is None or _loop.is_closed():
        return
    # Mutations may run on a worker thread; the sockets live on the server loop
    asyncio.run_coroutine_threadsafe(notification_connections.broadcast({
        "type": "notification",
        "payload": notification.to_dict()
    }), _loop)


def start() -> None:
    """Seed the store and wire the notification bridge."""
    global _loop, _bridge_subscriptions, _remove_broadcast_hook
    try:
        _loop = asyncio.get_running_loop()
    except RuntimeError:
        _loop = None

    seeded = load_seed_data(store, config.seed_dir)
    if seeded:
        logger.info("Seed data loaded: %s", seeded)

    if _bridge_subscriptions is None:
        _bridge_subscriptions = bridge.attach(store)
    if _remove_broadcast_hook is None:
        _remove_broadcast_hook = notification_queue.add_hook(_broadcast_notification)


def stop() -> None:
    global _loop, _bridge_subscriptions, _remove_broadcast_hook
    if _bridge_subscriptions is not None:
        _bridge_subscriptions.dispose_all()
        _bridge_subscriptions = None
    if _remove_broadcast_hook is not None:
        _remove_broadcast_hook()
        _remove_broadcast_hook = None
    _loop = None
