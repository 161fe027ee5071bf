import json
import unittest
from unittest.mock import patch

from crm_shared import CRMActor
from lead_assignment_endpoints import (
    crm_lead_assignment_rules,
    crm_lead_assignment_stats,
    crm_lead_auto_assign,
    crm_lead_scores,
    crm_lead_scoring_criteria,
)
from services import lead_service
from services.crm_store import create_entity, reset_memory_store_for_tests

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


class LeadAssignmentEndpointTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        create_entity("users", TENANT, {"displayName": "Rep", "role": "user", "status": "active"}, entity_id="rep-1")
        self.as_role("manager")

    def as_role(self, role, user_id="user-1"):
        actor = CRMActor(tenant_id=TENANT, user_id=user_id, email=f"{user_id}@example.com", role=role)
        patcher = patch("lead_assignment_endpoints.resolve_actor_or_error", return_value=(actor, None))
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def _json(resp):
        return json.loads(resp.get_body().decode("utf-8"))

    def _lead(self):
        body = {"companyId": "co-1", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}
        return lead_service.create_lead(TENANT, body, "user-1")

    def test_rule_then_run_assigns_leads(self):
        resp = crm_lead_assignment_rules(
            DummyRequest("POST", body={"name": "All", "priority": 1, "assignTo": {"userIds": ["rep-1"]}})
        )
        self.assertEqual(resp.status_code, 201)
        lead = self._lead()

        resp = crm_lead_auto_assign(DummyRequest("POST", body={}))
        payload = self._json(resp)
        self.assertEqual(payload["assigned"], 1)
        self.assertEqual(payload["results"][0]["leadId"], lead["id"])

        stats = self._json(crm_lead_assignment_stats(DummyRequest("GET")))["items"]
        self.assertEqual(stats[0]["leadsAssigned"], 1)

    def test_plain_users_cannot_manage_rules(self):
        self.as_role("user")
        resp = crm_lead_assignment_rules(DummyRequest("GET"))
        self.assertEqual(resp.status_code, 403)

    def test_rescore_and_list_by_quality(self):
        self._lead()
        resp = crm_lead_scores(DummyRequest("POST", body={}))
        self.assertEqual(self._json(resp)["updated"], 1)
        cold = self._json(crm_lead_scores(DummyRequest("GET", params={"quality": "cold"})))["items"]
        self.assertEqual(len(cold), 1)
        resp = crm_lead_scores(DummyRequest("GET", params={"quality": "tepid"}))
        self.assertEqual(resp.status_code, 400)

    def test_criteria_changes_need_settings_permission(self):
        resp = crm_lead_scoring_criteria(DummyRequest("PUT", body={"weights": {"fit": 0.5}}))
        self.assertEqual(resp.status_code, 403)
        self.as_role("admin")
        resp = crm_lead_scoring_criteria(DummyRequest("PUT", body={"weights": {"fit": 0.5}}))
        self.assertEqual(self._json(resp)["criteria"]["weights"]["fit"], 0.5)


if __name__ == "__main__":
    unittest.main()
