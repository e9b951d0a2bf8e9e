"""In-process realtime document store over the SQL collections.

Subscribers get the full current collection on subscribe and again after
every mutation of that topic. Change listeners get ``(change_type, record)``
for each mutation. Dispatch is synchronous on the mutating call.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from .db import SessionLocal
from .persistence import (
    create_record,
    count_records,
    delete_record,
    get_record,
    list_records,
    resolve_topic,
    update_record,
)
from .schemas import Record

logger = logging.getLogger(__name__)

ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"

SnapshotListener = Callable[[List[Record]], None]
ChangeListener = Callable[[str, Record], None]


class LiveStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self._snapshot_listeners: Dict[str, Dict[object, SnapshotListener]] = {}
        self._change_listeners: Dict[str, Dict[object, ChangeListener]] = {}

    # --- Point reads ---

    def get_all(self, topic: str) -> List[Record]:
        """One-shot read of a full collection in stored order."""
        db = self.session_factory()
        try:
            return list_records(db, topic)
        finally:
            db.close()

    def count(self, topic: str) -> int:
        db = self.session_factory()
        try:
            return count_records(db, topic)
        finally:
            db.close()

    def get(self, topic: str, record_id: str) -> Optional[Record]:
        db = self.session_factory()
        try:
            return get_record(db, topic, record_id)
        finally:
            db.close()

    # --- Subscriptions ---

    def subscribe(self, topic: str, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener and deliver the current collection right away."""
        # Reading first means a failing topic leaves nothing registered
        records = self.get_all(topic)
        token = self._register(self._snapshot_listeners, topic, listener)
        self._safe_call(topic, listener, records)
        return self._unregister(self._snapshot_listeners, topic, token)

    def subscribe_changes(self, topic: str, listener: ChangeListener) -> Callable[[], None]:
        resolve_topic(topic)
        token = self._register(self._change_listeners, topic, listener)
        return self._unregister(self._change_listeners, topic, token)

    def listener_count(self, topic: str) -> int:
        return len(self._snapshot_listeners.get(topic, {})) + len(self._change_listeners.get(topic, {}))

    def _register(self, registry: Dict[str, Dict[object, Callable]], topic: str, listener: Callable) -> object:
        token = object()
        registry.setdefault(topic, {})[token] = listener
        return token

    def _unregister(self, registry: Dict[str, Dict[object, Callable]], topic: str, token: object) -> Callable[[], None]:
        def dispose() -> None:
            listeners = registry.get(topic)
            if listeners is not None:
                listeners.pop(token, None)
        return dispose

    # --- Mutations ---

    def create(self, topic: str, data: Dict[str, Any]) -> Record:
        db = self.session_factory()
        try:
            record = create_record(db, topic, data)
        finally:
            db.close()
        self._publish(topic, ADDED, record)
        return record

    def update(self, topic: str, record_id: str, changes: Dict[str, Any]) -> Record:
        db = self.session_factory()
        try:
            record = update_record(db, topic, record_id, changes)
        finally:
            db.close()
        self._publish(topic, MODIFIED, record)
        return record

    def delete(self, topic: str, record_id: str) -> Record:
        db = self.session_factory()
        try:
            record = delete_record(db, topic, record_id)
        finally:
            db.close()
        self._publish(topic, REMOVED, record)
        return record

    # --- Dispatch ---

    def _publish(self, topic: str, change_type: str, record: Record) -> None:
        snapshot_listeners = list(self._snapshot_listeners.get(topic, {}).values())
        if snapshot_listeners:
            records = self.get_all(topic)
            for listener in snapshot_listeners:
                self._safe_call(topic, listener, records)

        for listener in list(self._change_listeners.get(topic, {}).values()):
            self._safe_call(topic, listener, change_type, record)

    def _safe_call(self, topic: str, listener: Callable, *args: Any) -> None:
        try:
            listener(*args)
        except Exception:
            logger.exception("Listener on %s failed", topic)
