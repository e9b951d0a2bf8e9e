import logging

import pytest

from safefleet.notifications import NotificationBridge, NotificationQueue
from safefleet.schemas import Infraction, Message, TripReport
from safefleet.store import ADDED, MODIFIED
from safefleet.sync import SubscriptionError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def new_infraction(infraction_id="I1", declared="Alarm"):
    return Infraction(id=infraction_id, partner_id="P1", date="2024-03-01", declared_classification=declared)


def new_message(receiver_id):
    return Message(id="M1", sender_id="U2", receiver_id=receiver_id, content="Please review trip t4")


class TestNotificationQueue:
    """Visible notifications, expiry and the unread counter."""

    def setup_method(self):
        self.clock = FakeClock()
        self.queue = NotificationQueue(clock=self.clock)

    def test_push_and_expire(self):
        notification = self.queue.push("info", "Trip uploaded", duration_ms=4000)
        assert self.queue.active() == [notification]

        self.clock.now += 3.9
        assert self.queue.active() == [notification]
        self.clock.now += 0.2
        assert self.queue.active() == []

    def test_default_duration(self):
        notification = self.queue.push("success", "Saved")
        assert notification.duration_ms == 4000
        assert notification.expires_at == 1004.0

    def test_sticky_notification(self):
        self.queue.push("error", "Connection lost", duration_ms=0)
        self.clock.now += 3600
        assert len(self.queue.active()) == 1

    def test_unread_counter(self):
        self.queue.push("info", "one")
        self.queue.push("info", "two")
        assert self.queue.unread_count == 2
        self.queue.clear_unread()
        assert self.queue.unread_count == 0
        assert len(self.queue.active()) == 2

    def test_dismiss_and_clear(self):
        first = self.queue.push("info", "one")
        self.queue.push("info", "two")
        assert self.queue.dismiss(first.id)
        assert not self.queue.dismiss(first.id)
        assert [n.message for n in self.queue.active()] == ["two"]

        self.queue.clear()
        assert self.queue.active() == []
        assert self.queue.unread_count == 0

    def test_invalid_severity(self):
        with pytest.raises(ValueError):
            self.queue.push("fatal", "nope")

    def test_hooks(self, caplog):
        seen = []
        remove = self.queue.add_hook(seen.append)
        self.queue.add_hook(lambda notification: 1 / 0)

        with caplog.at_level(logging.ERROR, logger="safefleet.notifications"):
            notification = self.queue.push("warning", "hooked")
        assert seen == [notification]
        assert "Notification hook failed" in caplog.text

        remove()
        self.queue.push("warning", "not hooked")
        assert seen == [notification]

    def test_to_dict(self):
        notification = self.queue.push("info", "Trip uploaded")
        data = notification.to_dict()
        assert data["severity"] == "info"
        assert data["message"] == "Trip uploaded"
        assert data["created_at"] == 1000.0


class TestNotificationBridge:
    """Change events are turned into notifications through the topic table."""

    def setup_method(self):
        self.queue = NotificationQueue(clock=FakeClock())
        self.bridge = NotificationBridge(self.queue, current_user_id="U1")

    def test_new_infraction_is_a_warning(self):
        notification = self.bridge.on_change("infractions", ADDED, new_infraction())
        assert notification.severity == "warning"
        assert notification.message == "New infraction (Alarm) recorded on 2024-03-01"

    def test_new_report(self):
        report = TripReport(id="T1", date="2024-03-01", partner_id="P1", driver_id="D7")
        notification = self.bridge.on_change("reports", ADDED, report)
        assert notification.severity == "info"
        assert "driver D7" in notification.message

    def test_only_added_records_notify(self):
        assert self.bridge.on_change("infractions", MODIFIED, new_infraction()) is None
        assert self.queue.active() == []

    def test_messages_only_for_current_user(self):
        assert self.bridge.on_change("messages", ADDED, new_message("U9")) is None
        notification = self.bridge.on_change("messages", ADDED, new_message("U1"))
        assert notification.message == "New message from U2"

    def test_no_current_user_means_no_message_notifications(self):
        bridge = NotificationBridge(self.queue)
        assert bridge.on_change("messages", ADDED, new_message("U1")) is None

    def test_unregistered_topic(self):
        assert self.bridge.on_change("partners", ADDED, new_infraction()) is None

    def test_custom_registration(self):
        bridge = NotificationBridge(self.queue, register_defaults=False)
        assert bridge.rules == {}

        bridge.register("infractions", lambda record: record.declared_classification == "Alarm", severity="error")
        assert bridge.on_change("infractions", ADDED, new_infraction(declared="Alert")) is None
        notification = bridge.on_change("infractions", ADDED, new_infraction())
        assert notification.severity == "error"
        assert notification.message == "New infractions record I1"

        bridge.unregister("infractions")
        assert bridge.on_change("infractions", ADDED, new_infraction()) is None

    def test_failing_predicate_is_logged(self, caplog):
        self.bridge.register("infractions", lambda record: record.missing_field)
        with caplog.at_level(logging.ERROR, logger="safefleet.notifications"):
            assert self.bridge.on_change("infractions", ADDED, new_infraction()) is None
        assert "Notification predicate for infractions failed" in caplog.text

    def test_attach_to_store(self, live_store):
        subscriptions = self.bridge.attach(live_store)
        assert sorted(subscriptions.topics) == ["infractions", "messages", "reports"]

        live_store.create("infractions", {"id": "I1", "partner_id": "P1", "date": "2024-03-01",
                                          "declared_classification": "Alert"})
        assert [n.message for n in self.queue.active()] == ["New infraction (Alert) recorded on 2024-03-01"]

        subscriptions.dispose_all()
        live_store.create("infractions", {"id": "I2", "partner_id": "P1", "date": "2024-03-02"})
        assert len(self.queue.active()) == 1

    def test_attach_with_unknown_topic(self, live_store):
        self.bridge.register("trucks", lambda record: True)
        with pytest.raises(SubscriptionError) as excinfo:
            self.bridge.attach(live_store)

        assert list(excinfo.value.failures) == ["trucks"]
        excinfo.value.subscriptions.dispose_all()
        assert live_store.listener_count("infractions") == 0


if __name__ == "__main__":
    pytest.main([__file__])
