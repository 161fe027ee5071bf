import unittest

from services import lead_scoring_service as scoring
from services import lead_service
from services.crm_store import create_entity, get_entity, reset_memory_store_for_tests
from shared.errors import NotFoundError, ValidationFailedError

TENANT = "tenant-a"


def _lead(**overrides):
    data = {"companyId": "co-1", "firstName": "Ada", "lastName": "Lovelace", "email": "ada@example.com"}
    data.update(overrides)
    return lead_service.create_lead(TENANT, data, "user-1")


def _activity(lead_id, activity_type, description, times=1):
    for _ in range(times):
        create_entity("activities", TENANT, {"leadId": lead_id, "type": activity_type, "description": description})


class LeadScoringTests(unittest.TestCase):
    def setUp(self):
        reset_memory_store_for_tests()

    def _hot_lead(self):
        lead = _lead(
            value=60000,
            company={"name": "Analytical Engines", "industry": "software", "size": "1000+", "techStack": ["python"]},
            purchaseTimeframe="immediate",
            decisionMakerInvolved=True,
            requirementsClarity=1,
            competitorCount=0,
        )
        _activity(lead["id"], "email", "Clicked link in newsletter", times=5)
        _activity(lead["id"], "website_visit", "Visited /pricing", times=5)
        _activity(lead["id"], "form_submit", "Contact form", times=2)
        _activity(lead["id"], "document_download", "Whitepaper", times=2)
        _activity(lead["id"], "call", "Discovery call attended")
        _activity(lead["id"], "meeting", "Product demo")
        _activity(lead["id"], "email", "Asked about pricing tiers")
        return lead

    def test_unknown_lead_only_gets_default_timeline(self):
        score = scoring.calculate_lead_score({"firstName": "Ada"}, [])
        self.assertEqual(score["components"], {"engagement": 0, "fit": 0, "interest": 0, "timeline": 5})
        # 5 of 25 timeline points at weight 0.2
        self.assertEqual(score["total"], 4)
        self.assertEqual(score["quality"], "cold")

    def test_fully_engaged_lead_is_hot(self):
        lead = self._hot_lead()
        score = scoring.update_lead_score(TENANT, lead["id"])
        self.assertEqual(score["components"], {"engagement": 25, "fit": 25, "interest": 25, "timeline": 25})
        self.assertEqual(score["total"], 100)
        self.assertEqual(score["quality"], "hot")
        self.assertEqual(get_entity("leads", TENANT, lead["id"])["score"]["total"], 100)

    def test_fit_and_interest_without_timeline_is_warm(self):
        lead = {
            "createdAt": "2026-03-01T09:00:00Z",
            "value": 60000,
            "company": {"industry": "retail", "size": "1000+", "techStack": ["erp"]},
        }
        activities = [
            {"type": "meeting", "description": "Product walkthrough", "createdAt": "2026-03-01T12:00:00Z"},
            {"type": "call", "description": "pricing follow-up", "createdAt": "2026-03-02T09:00:00Z"},
        ]
        score = scoring.calculate_lead_score(lead, activities)
        self.assertEqual(score["components"]["fit"], 25)
        self.assertEqual(score["components"]["interest"], 25)
        # 30 fit + 20 interest + 4 default timeline
        self.assertEqual(score["total"], 54)
        self.assertEqual(score["quality"], "warm")

    def test_budget_tiers_and_slow_response(self):
        lead = {"createdAt": "2026-03-01T09:00:00Z", "value": 5000}
        late = [{"type": "email", "description": "hello", "createdAt": "2026-03-03T09:00:00Z"}]
        score = scoring.calculate_lead_score(lead, late)
        # second budget tier: ceil(2 * 2 * 10 / 10)
        self.assertEqual(score["components"]["fit"], 4)
        # 48 hours to first touch earns half the response points
        self.assertEqual(score["components"]["interest"], 2.5)

    def test_tenant_criteria_override_defaults(self):
        with self.assertRaises(ValidationFailedError):
            scoring.update_scoring_criteria(TENANT, {"luckyGuess": 5})
        with self.assertRaises(ValidationFailedError):
            scoring.update_scoring_criteria(TENANT, {"weights": {"engagement": -1}})

        criteria = scoring.update_scoring_criteria(TENANT, {"weights": {"timeline": 1.0}})
        self.assertEqual(criteria["weights"]["timeline"], 1.0)
        self.assertEqual(criteria["weights"]["fit"], 0.3)
        self.assertEqual(scoring.get_scoring_criteria("tenant-b")["weights"]["timeline"], 0.2)

        lead = _lead()
        score = scoring.update_lead_score(TENANT, lead["id"])
        self.assertEqual(score["total"], 20)

    def test_rescore_all_and_filter_by_quality(self):
        hot = self._hot_lead()
        cold = _lead(firstName="Cold", email="cold@example.com")
        _lead(firstName="Other", email="other@example.com")
        self.assertEqual(scoring.update_all_lead_scores(TENANT), 3)
        self.assertEqual([item["id"] for item in scoring.get_leads_by_quality(TENANT, "hot")], [hot["id"]])
        self.assertIn(cold["id"], [item["id"] for item in scoring.get_leads_by_quality(TENANT, "cold")])
        self.assertEqual(scoring.get_leads_by_quality(TENANT, "warm"), [])
        with self.assertRaises(ValidationFailedError):
            scoring.get_leads_by_quality(TENANT, "lukewarm")

    def test_missing_lead_raises(self):
        with self.assertRaises(NotFoundError):
            scoring.update_lead_score(TENANT, "missing")


if __name__ == "__main__":
    unittest.main()
