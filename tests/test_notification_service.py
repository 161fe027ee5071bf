import unittest
from datetime import datetime, timedelta, timezone

from services import notification_service as notifications
from services.crm_store import reset_memory_store_for_tests
from shared.errors import ValidationFailedError

TENANT = "tenant-a"


def _notify(recipients, **overrides):
    kwargs = {
        "notif_type": "system",
        "title": "Maintenance",
        "message": "Scheduled maintenance tonight",
        "recipient_ids": recipients,
        "created_by": "admin-1",
    }
    kwargs.update(overrides)
    return notifications.create_notification(TENANT, **kwargs)


class NotificationServiceTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def test_create_dedupes_recipients_and_sets_expiry(self):
        item = _notify(["u1", "u2", "u1", ""])
        self.assertEqual(item["recipientIds"], ["u1", "u2"])
        self.assertEqual(item["readBy"], [])
        self.assertEqual(item["priority"], "medium")
        self.assertIsNotNone(item["expiresAt"])

    def test_create_requires_recipients_and_known_type(self):
        with self.assertRaises(ValidationFailedError):
            _notify([])
        with self.assertRaises(ValidationFailedError):
            _notify(["u1"], notif_type="carrier_pigeon")

    def test_read_and_dismiss_remove_from_unread(self):
        first = _notify(["u1", "u2"])
        second = _notify(["u1"], title="Second")
        self.assertEqual(len(notifications.get_unread_notifications(TENANT, "u1")), 2)

        self.assertTrue(notifications.mark_as_read(TENANT, first["id"], "u1"))
        unread = notifications.get_unread_notifications(TENANT, "u1")
        self.assertEqual([item["id"] for item in unread], [second["id"]])
        # other recipients keep their own read state
        self.assertEqual(len(notifications.get_unread_notifications(TENANT, "u2")), 1)

        notifications.dismiss_notification(TENANT, second["id"], "u1")
        self.assertEqual(notifications.get_unread_notifications(TENANT, "u1"), [])
        visible = notifications.get_user_notifications(TENANT, "u1")
        self.assertEqual([item["id"] for item in visible], [first["id"]])

    def test_mark_as_read_is_idempotent(self):
        item = _notify(["u1"])
        notifications.mark_as_read(TENANT, item["id"], "u1")
        notifications.mark_as_read(TENANT, item["id"], "u1")
        self.assertEqual(notifications.get_notification(TENANT, item["id"])["readBy"], ["u1"])

    def test_missing_notification_reports_false(self):
        self.assertFalse(notifications.mark_as_read(TENANT, "missing", "u1"))
        self.assertFalse(notifications.mark_multiple_as_read(TENANT, [], "u1"))
        self.assertFalse(notifications.remove_recipients(TENANT, "missing", ["u1"]))

    def test_mark_all_as_read(self):
        _notify(["u1"])
        _notify(["u1"])
        self.assertTrue(notifications.mark_all_as_read(TENANT, "u1"))
        self.assertEqual(notifications.get_unread_notifications(TENANT, "u1"), [])

    def test_recipient_management(self):
        item = _notify(["u1"])
        notifications.add_recipients(TENANT, item["id"], ["u2", "u1"])
        self.assertEqual(notifications.get_notification(TENANT, item["id"])["recipientIds"], ["u1", "u2"])
        notifications.remove_recipients(TENANT, item["id"], ["u1"])
        self.assertEqual(notifications.get_notification(TENANT, item["id"])["recipientIds"], ["u2"])

    def test_expired_notifications_are_hidden_and_purged(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        _notify(["u1"], expires_at=past)
        live = _notify(["u1"])
        unread = notifications.get_unread_notifications(TENANT, "u1")
        self.assertEqual([item["id"] for item in unread], [live["id"]])
        self.assertEqual(notifications.delete_expired_notifications(TENANT), 1)
        self.assertEqual(notifications.delete_expired_notifications(TENANT), 0)

    def test_polling_feed_advances_cursor(self):
        first = _notify(["u1"])
        feed = notifications.get_notifications_since(TENANT, "u1")
        self.assertEqual([item["id"] for item in feed["items"]], [first["id"]])
        self.assertFalse(feed["hasMore"])
        cursor = feed["cursor"]

        again = notifications.get_notifications_since(TENANT, "u1", cursor)
        self.assertEqual(again["items"], [])
        self.assertEqual(again["cursor"], cursor)
        self.assertFalse(again["hasMore"])

    def test_polling_feed_pages_through_a_burst(self):
        feed = notifications.get_notifications_since(TENANT, "u1")
        self.assertEqual(feed["items"], [])
        _notify(["u1"], title="Before")
        cursor = notifications.get_notifications_since(TENANT, "u1", feed["cursor"])["cursor"]

        burst = [_notify(["u1"], title=f"Burst {index}")["id"] for index in range(250)]
        _notify(["u2"], title="Someone else")
        seen = []
        polls = 0
        while True:
            feed = notifications.get_notifications_since(TENANT, "u1", cursor)
            seen.extend(item["id"] for item in feed["items"])
            cursor = feed["cursor"]
            polls += 1
            if not feed["hasMore"]:
                break
        self.assertEqual(seen, burst)
        self.assertEqual(polls, 5)

    def test_read_and_dismiss_only_for_recipients(self):
        mine = _notify(["u1"])
        theirs = _notify(["u2"])
        self.assertFalse(notifications.mark_as_read(TENANT, theirs["id"], "u1"))
        self.assertFalse(notifications.dismiss_notification(TENANT, theirs["id"], "u1"))
        self.assertFalse(notifications.mark_multiple_as_read(TENANT, [mine["id"], theirs["id"]], "u1"))
        self.assertFalse(notifications.dismiss_multiple(TENANT, [theirs["id"]], "u1"))

        untouched = notifications.get_notification(TENANT, theirs["id"])
        self.assertEqual(untouched["readBy"], [])
        self.assertEqual(untouched["dismissedBy"], [])
        self.assertEqual(notifications.get_notification(TENANT, mine["id"])["readBy"], ["u1"])

    def test_notifications_do_not_leak_across_tenants(self):
        _notify(["u1"])
        self.assertEqual(notifications.get_unread_notifications("tenant-b", "u1"), [])


if __name__ == "__main__":
    unittest.main()
