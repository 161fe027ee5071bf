import json
import unittest
from unittest.mock import patch

from crm_shared import CRMActor
from notification_endpoints import crm_notification_bulk_action, crm_notifications
from services import notification_service
from services.crm_store import reset_memory_store_for_tests

TENANT = "1"


class DummyRequest:
    def __init__(self, method, body=None, params=None, route_params=None):
        self.method = method
        self.params = params or {}
        self.headers = {}
        self.route_params = route_params or {}
        self._body = body

    def get_json(self):
        if self._body is None:
            raise ValueError()
        return self._body


def _notify(recipients, title="Heads up"):
    return notification_service.create_notification(
        TENANT, notif_type="system", title=title, message="Body", recipient_ids=recipients, created_by="admin-1"
    )


class NotificationEndpointTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.as_role("admin")

    def as_role(self, role, user_id="user-1"):
        actor = CRMActor(tenant_id=TENANT, user_id=user_id, email=f"{user_id}@example.com", role=role)
        patcher = patch("notification_endpoints.resolve_actor_or_error", return_value=(actor, None))
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def _json(resp):
        return json.loads(resp.get_body().decode("utf-8"))

    def test_send_without_type_defaults_to_system(self):
        resp = crm_notifications(
            DummyRequest("POST", body={"title": "Deploy", "message": "Tonight", "recipientIds": ["user-2"]})
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self._json(resp)["item"]["type"], "system")

    def test_send_with_unknown_type_is_rejected(self):
        resp = crm_notifications(
            DummyRequest("POST", body={"type": "info", "title": "Deploy", "message": "Tonight", "recipientIds": ["user-2"]})
        )
        self.assertEqual(resp.status_code, 400)

    def test_polling_reports_has_more(self):
        for index in range(notification_service.POLL_PAGE_SIZE + 1):
            _notify(["user-1"], title=f"N{index}")
        resp = crm_notifications(DummyRequest("GET", params={"since": ""}))
        payload = self._json(resp)
        self.assertEqual(len(payload["items"]), notification_service.POLL_PAGE_SIZE)
        self.assertTrue(payload["hasMore"])

        resp = crm_notifications(DummyRequest("GET", params={"since": payload["nextCursor"]}))
        payload = self._json(resp)
        self.assertEqual(len(payload["items"]), 1)
        self.assertFalse(payload["hasMore"])

    def test_bulk_dismiss_skips_notifications_for_other_users(self):
        other = _notify(["user-2"])
        self.as_role("user", user_id="user-1")
        resp = crm_notification_bulk_action(
            DummyRequest("POST", body={"ids": [other["id"]]}, route_params={"action": "dismiss"})
        )
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(self._json(resp)["ok"])
        self.assertEqual(notification_service.get_notification(TENANT, other["id"])["dismissedBy"], [])

    def test_bulk_read_marks_own_notifications(self):
        mine = _notify(["user-1"])
        resp = crm_notification_bulk_action(
            DummyRequest("POST", body={"ids": [mine["id"]]}, route_params={"action": "read"})
        )
        self.assertTrue(self._json(resp)["ok"])
        self.assertEqual(notification_service.get_notification(TENANT, mine["id"])["readBy"], ["user-1"])


if __name__ == "__main__":
    unittest.main()
