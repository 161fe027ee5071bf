import json
import unittest
from unittest.mock import patch

from crm_endpoints import crm_customer_detail, crm_customers, crm_lead_assign, crm_lead_convert, crm_lead_detail, crm_leads
from crm_shared import CRMActor
from services import lead_service, notification_service
from services.crm_store import list_audit_events, reset_memory_store_for_tests

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


def _actor(role, user_id="user-1"):
    return CRMActor(tenant_id=TENANT, user_id=user_id, email=f"{user_id}@example.com", role=role)


class CrmEndpointTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        self.as_role("admin")

    def as_role(self, role, user_id="user-1"):
        actor = _actor(role, user_id)
        patcher = patch("crm_endpoints.resolve_actor_or_error", return_value=(actor, None))
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def _json(resp):
        return json.loads(resp.get_body().decode("utf-8"))

    def _create_lead(self, **overrides):
        body = {"companyId": "co-1", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}
        body.update(overrides)
        return lead_service.create_lead(TENANT, body, "user-1")

    def test_options_short_circuits(self):
        resp = crm_customers(DummyRequest("OPTIONS"))
        self.assertEqual(resp.status_code, 204)

    def test_create_customer_is_audited(self):
        resp = crm_customers(DummyRequest("POST", body={"companyId": "co-1", "name": "Acme"}))
        self.assertEqual(resp.status_code, 201)
        item = self._json(resp)["item"]
        self.assertEqual(item["status"], "active")
        events = list_audit_events(TENANT)
        self.assertEqual([event["action"] for event in events], ["customer_created"])

    def test_validation_errors_return_400_with_details(self):
        resp = crm_customers(DummyRequest("POST", body={"companyId": "co-1"}))
        self.assertEqual(resp.status_code, 400)
        payload = self._json(resp)
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["details"][0]["field"], "name")

    def test_guest_cannot_create(self):
        self.as_role("guest")
        resp = crm_leads(DummyRequest("POST", body={"companyId": "co-1"}))
        self.assertEqual(resp.status_code, 403)

    def test_user_only_sees_unassigned_or_own_leads(self):
        self._create_lead(assignedTo="user-1")
        self._create_lead(firstName="Alan", lastName="Turing", email="alan@example.com", assignedTo="user-2")
        self._create_lead(firstName="Grace", lastName="Hopper", email="grace@example.com")
        self.as_role("user", "user-1")
        items = self._json(crm_leads(DummyRequest("GET")))["items"]
        self.assertEqual(sorted(item["firstName"] for item in items), ["Ada", "Grace"])

    def test_search_requires_company(self):
        self._create_lead(company="Engines Ltd")
        items = self._json(crm_leads(DummyRequest("GET", params={"search": "engines", "companyId": "co-1"})))["items"]
        self.assertEqual(len(items), 1)

    def test_detail_hides_other_users_records(self):
        lead = self._create_lead(assignedTo="user-2")
        self.as_role("user", "user-1")
        resp = crm_lead_detail(DummyRequest("GET", route_params={"lead_id": lead["id"]}))
        self.assertEqual(resp.status_code, 403)

    def test_missing_record_is_404(self):
        resp = crm_customer_detail(DummyRequest("GET", route_params={"customer_id": "missing"}))
        self.assertEqual(resp.status_code, 404)

    def test_delete_requires_admin(self):
        lead = self._create_lead()
        self.as_role("manager")
        resp = crm_lead_detail(DummyRequest("DELETE", route_params={"lead_id": lead["id"]}))
        self.assertEqual(resp.status_code, 403)
        self.as_role("admin")
        resp = crm_lead_detail(DummyRequest("DELETE", route_params={"lead_id": lead["id"]}))
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(lead_service.get_lead(TENANT, lead["id"]))

    def test_status_only_patch_notifies_assignee(self):
        lead = self._create_lead(assignedTo="rep-7")
        resp = crm_lead_detail(
            DummyRequest("PATCH", body={"status": "contacted"}, route_params={"lead_id": lead["id"]})
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._json(resp)["item"]["status"], "contacted")
        unread = notification_service.get_unread_notifications(TENANT, "rep-7")
        self.assertEqual([item["type"] for item in unread], ["lead_status_changed"])

    def test_assign_requires_manager(self):
        lead = self._create_lead()
        self.as_role("user")
        request = DummyRequest("POST", body={"assignedTo": "rep-7"}, route_params={"lead_id": lead["id"]})
        self.assertEqual(crm_lead_assign(request).status_code, 403)
        self.as_role("manager")
        resp = crm_lead_assign(request)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._json(resp)["item"]["assignedTo"], "rep-7")

    def test_convert_lead(self):
        lead = self._create_lead(company="Engines Ltd")
        resp = crm_lead_convert(DummyRequest("POST", body={}, route_params={"lead_id": lead["id"]}))
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self._json(resp)["item"]["name"], "Engines Ltd")
        missing = crm_lead_convert(DummyRequest("POST", body={}, route_params={"lead_id": "missing"}))
        self.assertEqual(missing.status_code, 404)


if __name__ == "__main__":
    unittest.main()
