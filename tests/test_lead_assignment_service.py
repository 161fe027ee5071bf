import unittest

from services import lead_assignment_service as assignment
from services import lead_service, notification_service
from services.crm_store import create_entity, query_all, reset_memory_store_for_tests
from shared.errors import NotFoundError, ValidationFailedError

TENANT = "tenant-a"


def _user(user_id, role="user", status="active"):
    return create_entity(
        "users", TENANT, {"displayName": user_id.title(), "role": role, "status": status}, entity_id=user_id
    )


def _lead(**overrides):
    data = {"companyId": "co-1", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}
    data.update(overrides)
    return lead_service.create_lead(TENANT, data, "user-1")


def _rule(name="Everyone", priority=1, **assign_to):
    criteria = assign_to.pop("criteria", {})
    return assignment.create_assignment_rule(
        TENANT, {"name": name, "priority": priority, "criteria": criteria, "assignTo": assign_to}, "admin-1"
    )


class LeadAssignmentTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()
        _user("rep-a")
        _user("rep-b")
        _user("rep-c", status="inactive")
        _user("boss", role="manager")

    def test_rules_are_ordered_and_soft_deleted(self):
        late = _rule("Late", priority=5, strategy="first_available")
        early = _rule("Early", priority=1, strategy="first_available")
        self.assertEqual([rule["id"] for rule in assignment.get_assignment_rules(TENANT)], [early["id"], late["id"]])

        assignment.delete_assignment_rule(TENANT, early["id"], "admin-1")
        active = assignment.get_assignment_rules(TENANT, active_only=True)
        self.assertEqual([rule["id"] for rule in active], [late["id"]])
        self.assertFalse(assignment.get_assignment_rule(TENANT, early["id"])["isActive"])

    def test_rule_validation(self):
        with self.assertRaises(ValidationFailedError):
            assignment.create_assignment_rule(TENANT, {"name": "No target", "priority": 1}, "admin-1")
        with self.assertRaises(ValidationFailedError):
            _rule(strategy="lottery")
        with self.assertRaises(NotFoundError):
            assignment.update_assignment_rule(TENANT, "missing", {"name": "X"}, "admin-1")

    def test_round_robin_skips_inactive_users(self):
        _rule(strategy="round_robin", userIds=["rep-a", "rep-b", "rep-c"])
        leads = [_lead(firstName=f"Lead{index}") for index in range(3)]
        results = assignment.auto_assign_all_leads(TENANT)
        self.assertTrue(all(result["success"] for result in results))
        assigned = {result["leadId"]: result["assignedTo"] for result in results}
        self.assertEqual([assigned[lead["id"]] for lead in leads], ["rep-a", "rep-b", "rep-a"])

    def test_load_balanced_picks_lightest_open_workload(self):
        _lead(assignedTo="rep-a")
        _lead(assignedTo="rep-a")
        _lead(assignedTo="rep-b", status="lost")
        _rule(strategy="load_balanced", userIds=["rep-a", "rep-b"])
        picks = [assignment.auto_assign_lead(TENANT, _lead()["id"])["assignedTo"] for _ in range(3)]
        self.assertEqual(picks, ["rep-b", "rep-b", "rep-a"])

    def test_max_leads_per_user_caps_assignment(self):
        _lead(assignedTo="rep-a")
        _rule(strategy="first_available", userIds=["rep-a", "rep-b"], maxLeadsPerUser=1)
        self.assertEqual(assignment.auto_assign_lead(TENANT, _lead()["id"])["assignedTo"], "rep-b")
        result = assignment.auto_assign_lead(TENANT, _lead()["id"])
        self.assertFalse(result["success"])
        self.assertEqual(result["message"], "No eligible users found to assign lead")

    def test_first_matching_rule_wins(self):
        _rule("Referrals", priority=1, strategy="first_available", userIds=["rep-b"], criteria={"leadSources": ["referral"]})
        _rule("Managers", priority=2, strategy="first_available", roles=["manager"])
        referral = assignment.auto_assign_lead(TENANT, _lead(source="referral")["id"])
        self.assertEqual((referral["assignedTo"], referral["ruleName"]), ("rep-b", "Referrals"))
        other = assignment.auto_assign_lead(TENANT, _lead(source="website")["id"])
        self.assertEqual((other["assignedTo"], other["ruleName"]), ("boss", "Managers"))

    def test_territory_and_score_criteria(self):
        _rule(
            strategy="first_available",
            userIds=["rep-a"],
            criteria={"territory": ["CA"], "minLeadScore": 50},
        )
        texan = _lead(company={"address": {"state": "TX"}}, score={"total": 90})
        cold_californian = _lead(company={"address": {"state": "CA"}}, score={"total": 10})
        hot_californian = _lead(company={"address": {"state": "CA"}}, score={"total": 90})
        self.assertFalse(assignment.auto_assign_lead(TENANT, texan["id"])["success"])
        self.assertFalse(assignment.auto_assign_lead(TENANT, cold_californian["id"])["success"])
        self.assertTrue(assignment.auto_assign_lead(TENANT, hot_californian["id"])["success"])

    def test_auto_assign_reports_why_nothing_happened(self):
        self.assertEqual(assignment.auto_assign_lead(TENANT, "missing")["message"], "Lead not found")
        lead = _lead()
        self.assertEqual(assignment.auto_assign_lead(TENANT, lead["id"])["message"], "No active assignment rules found")
        _rule(strategy="first_available", criteria={"leadStatus": ["qualified"]})
        self.assertEqual(assignment.auto_assign_lead(TENANT, lead["id"])["message"], "No matching assignment rules found")
        owned = _lead(assignedTo="rep-a")
        self.assertEqual(assignment.auto_assign_lead(TENANT, owned["id"])["message"], "Lead is already assigned")

    def test_auto_assign_notifies_and_records_activity(self):
        _rule("Catch all", strategy="first_available", userIds=["rep-a"])
        lead = _lead()
        assignment.auto_assign_lead(TENANT, lead["id"])

        stored = lead_service.get_lead(TENANT, lead["id"])
        self.assertEqual(stored["assignedTo"], "rep-a")
        self.assertIsNotNone(stored["assignedAt"])
        unread = notification_service.get_unread_notifications(TENANT, "rep-a")
        self.assertEqual([item["type"] for item in unread], ["lead_assigned"])
        activities = query_all("activities", TENANT)
        self.assertEqual(len(activities), 1)
        self.assertEqual(activities[0]["description"], "Automatically assigned via rule: Catch all")

    def test_assignment_stats(self):
        won = _lead(assignedTo="rep-a", assignedAt="2026-03-01T09:00:00Z", status="won")
        _lead(assignedTo="rep-a", assignedAt="2026-03-02T09:00:00Z")
        create_entity(
            "activities",
            TENANT,
            {"leadId": won["id"], "type": "call", "description": "Intro call", "createdAt": "2026-03-01T11:00:00Z"},
        )
        stats = {row["userId"]: row for row in assignment.get_assignment_stats(TENANT)}
        self.assertEqual(set(stats), {"rep-a", "rep-b", "rep-c", "boss"})
        rep_a = stats["rep-a"]
        self.assertEqual(rep_a["leadsAssigned"], 2)
        self.assertEqual(rep_a["leadsConverted"], 1)
        self.assertEqual(rep_a["conversionRate"], 50)
        self.assertEqual(rep_a["avgResponseTime"], 2)
        self.assertEqual(rep_a["lastAssignedAt"], "2026-03-02T09:00:00Z")
        self.assertEqual(stats["rep-b"]["leadsAssigned"], 0)
        self.assertEqual(stats["rep-b"]["conversionRate"], 0)
        self.assertIsNone(stats["rep-b"]["lastAssignedAt"])


if __name__ == "__main__":
    unittest.main()
