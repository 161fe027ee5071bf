from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError, ValidationFailedError
from services import crm_store

logger = logging.getLogger(__name__)

LEADS_TABLE = "leads"
ACTIVITIES_TABLE = "activities"
SETTINGS_TABLE = "settings"
SETTINGS_ID = "leadScoring"

LEAD_QUALITIES = ["hot", "warm", "cold"]
HOT_THRESHOLD = 80
WARM_THRESHOLD = 50
CATEGORY_MAX = 25
CATEGORIES = ["engagement", "fit", "interest", "timeline"]

# Points per signal; each category is capped at CATEGORY_MAX before weighting.
DEFAULT_CRITERIA: Dict[str, Any] = {
    "emailClicks": 1,
    "websiteVisits": 2,
    "formSubmits": 3,
    "documentDownloads": 2,
    "callAttendance": 5,
    "budgetMatch": 10,
    "industryMatch": 5,
    "companySize": 5,
    "techStack": 5,
    "responseTime": 5,
    "meetingRequests": 10,
    "productQuestions": 5,
    "pricingInquiries": 5,
    "purchaseTimeframe": 10,
    "decisionMakerInvolved": 5,
    "requirementsClarity": 5,
    "competitorEvaluation": 5,
    "weights": {"engagement": 0.3, "fit": 0.3, "interest": 0.2, "timeline": 0.2},
}

# signal -> (activity type, description keyword, per-signal cap)
ENGAGEMENT_SIGNALS = {
    "emailClicks": ("email", "click", 5),
    "websiteVisits": ("website_visit", None, 10),
    "formSubmits": ("form_submit", None, 6),
    "documentDownloads": ("document_download", None, 4),
    "callAttendance": ("call", "attended", 5),
}
BUDGET_TIERS = [1000, 5000, 10000, 25000, 50000]
COMPANY_SIZE_RANK = {"1-10": 1, "11-50": 2, "51-200": 3, "201-1000": 4, "1000+": 5}
TIMEFRAME_FACTOR = {"immediate": 1.0, "1-3 months": 0.7, "3-6 months": 0.4, "6-12 months": 0.2, "12+ months": 0.1}
INQUIRY_TYPES = {"email", "call", "meeting"}
# Timeline score for leads with nothing recorded about their buying timeline.
DEFAULT_TIMELINE_SCORE = 5


def _number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def get_scoring_criteria(tenant_id: str) -> Dict[str, Any]:
    """Tenant overrides merged over the defaults."""
    stored = crm_store.get_entity(SETTINGS_TABLE, crm_store.require_tenant(tenant_id), SETTINGS_ID) or {}
    overrides = stored.get("criteria") if isinstance(stored.get("criteria"), dict) else {}
    return _merge_criteria(DEFAULT_CRITERIA, overrides)


def _merge_criteria(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = {**base, **{key: value for key, value in overrides.items() if key != "weights"}}
    merged["weights"] = {**base["weights"], **(overrides.get("weights") or {})}
    return merged


def update_scoring_criteria(tenant_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    errors = []
    for key, value in updates.items():
        if key == "weights":
            if not isinstance(value, dict):
                errors.append({"field": "weights", "message": "weights must be an object", "rule": "custom"})
                continue
            for category, weight in value.items():
                number = _number(weight)
                if category not in CATEGORIES or number is None or number < 0:
                    errors.append({"field": f"weights.{category}", "message": "Invalid weight", "rule": "custom"})
        elif key not in DEFAULT_CRITERIA:
            errors.append({"field": key, "message": "Unknown scoring criterion", "rule": "custom"})
        elif _number(value) is None or _number(value) < 0:
            errors.append({"field": key, "message": "Points must be a non-negative number", "rule": "min"})
    if errors:
        raise ValidationFailedError(errors)

    stored = crm_store.get_entity(SETTINGS_TABLE, tenant, SETTINGS_ID) or {}
    current = stored.get("criteria") if isinstance(stored.get("criteria"), dict) else {}
    overrides = {**current, **{key: value for key, value in updates.items() if key != "weights"}}
    if "weights" in updates:
        overrides["weights"] = {**(current.get("weights") or {}), **updates["weights"]}
    crm_store.upsert_entity(SETTINGS_TABLE, tenant, SETTINGS_ID, {"criteria": overrides})
    logger.info("Lead scoring criteria updated for tenant %s", tenant)
    return _merge_criteria(DEFAULT_CRITERIA, overrides)


def _count(activities: List[Dict[str, Any]], activity_type: str, keyword: Optional[str] = None) -> int:
    total = 0
    for activity in activities:
        if activity.get("type") != activity_type:
            continue
        if keyword and keyword not in str(activity.get("description") or "").lower():
            continue
        total += 1
    return total


def _mentions(activities: List[Dict[str, Any]], keyword: str) -> bool:
    return any(
        activity.get("type") in INQUIRY_TYPES and keyword in str(activity.get("description") or "").lower()
        for activity in activities
    )


def _engagement(activities: List[Dict[str, Any]], criteria: Dict[str, Any]) -> float:
    score = 0.0
    for signal, (activity_type, keyword, cap) in ENGAGEMENT_SIGNALS.items():
        score += min(_count(activities, activity_type, keyword) * float(criteria[signal]), cap)
    return score


def _fit(lead: Dict[str, Any], criteria: Dict[str, Any]) -> float:
    score = 0.0
    company = lead.get("company") if isinstance(lead.get("company"), dict) else {}
    value = _number(lead.get("value"))
    if value:
        tier = next((index for index, limit in enumerate(BUDGET_TIERS) if value <= limit), None)
        if tier is None:
            score += float(criteria["budgetMatch"])
        else:
            score += math.ceil((tier + 1) * 2 * float(criteria["budgetMatch"]) / 10)
    if company.get("industry"):
        score += float(criteria["industryMatch"])
    if company.get("size"):
        score += COMPANY_SIZE_RANK.get(str(company["size"]), 0) * float(criteria["companySize"]) / 5
    if company.get("techStack"):
        score += float(criteria["techStack"])
    return score


def _first_response_hours(lead: Dict[str, Any], activities: List[Dict[str, Any]]) -> Optional[float]:
    created = crm_store.parse_iso(lead.get("createdAt"))
    if created is None:
        return None
    times = [crm_store.parse_iso(activity.get("createdAt")) for activity in activities]
    times = [moment for moment in times if moment is not None and moment >= created]
    if not times:
        return None
    return (min(times) - created) / timedelta(hours=1)


def _interest(lead: Dict[str, Any], activities: List[Dict[str, Any]], criteria: Dict[str, Any]) -> float:
    score = 0.0
    if _count(activities, "meeting"):
        score += float(criteria["meetingRequests"])
    if _mentions(activities, "product"):
        score += float(criteria["productQuestions"])
    if _mentions(activities, "pricing"):
        score += float(criteria["pricingInquiries"])
    hours = _first_response_hours(lead, activities)
    if hours is not None:
        if hours <= 24:
            score += float(criteria["responseTime"])
        elif hours <= 72:
            score += float(criteria["responseTime"]) / 2
    return score


def _timeline(lead: Dict[str, Any], criteria: Dict[str, Any]) -> float:
    timeframe = lead.get("purchaseTimeframe")
    known = [timeframe, lead.get("decisionMakerInvolved"), lead.get("requirementsClarity"), lead.get("competitorCount")]
    if all(item is None for item in known):
        return DEFAULT_TIMELINE_SCORE
    score = 0.0
    if timeframe in TIMEFRAME_FACTOR:
        score += TIMEFRAME_FACTOR[timeframe] * float(criteria["purchaseTimeframe"])
    if lead.get("decisionMakerInvolved"):
        score += float(criteria["decisionMakerInvolved"])
    clarity = _number(lead.get("requirementsClarity"))
    if clarity is not None:
        # 0..1 share of requirements written down
        score += max(0.0, min(clarity, 1.0)) * float(criteria["requirementsClarity"])
    competitors = _number(lead.get("competitorCount"))
    if competitors is not None:
        score += float(criteria["competitorEvaluation"]) / (1 + max(competitors, 0))
    return score


def quality_for(total: int) -> str:
    if total >= HOT_THRESHOLD:
        return "hot"
    if total >= WARM_THRESHOLD:
        return "warm"
    return "cold"


def calculate_lead_score(
    lead: Dict[str, Any], activities: List[Dict[str, Any]], criteria: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Score a lead from its attributes and activity history.

    Each category is capped at 25 points and scaled to 0..100 before the category
    weights are applied, so the weighted total is on a 0..100 scale.
    """
    rules = _merge_criteria(DEFAULT_CRITERIA, criteria or {})
    components = {
        "engagement": min(_engagement(activities, rules), CATEGORY_MAX),
        "fit": min(_fit(lead, rules), CATEGORY_MAX),
        "interest": min(_interest(lead, activities, rules), CATEGORY_MAX),
        "timeline": min(_timeline(lead, rules), CATEGORY_MAX),
    }
    weights = rules["weights"]
    total = round(sum(components[name] / CATEGORY_MAX * 100 * float(weights.get(name) or 0) for name in CATEGORIES))
    return {
        "total": total,
        "quality": quality_for(total),
        "components": components,
        "lastUpdated": crm_store.utc_now_iso(),
    }


def _activities_by_lead(tenant: str) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for activity in crm_store.query_all(ACTIVITIES_TABLE, tenant, filter_fn=lambda item: bool(item.get("leadId"))):
        grouped.setdefault(str(activity["leadId"]), []).append(activity)
    return grouped


def update_lead_score(tenant_id: str, lead_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    lead = crm_store.get_entity(LEADS_TABLE, tenant, lead_id)
    if lead is None:
        raise NotFoundError(f"Lead {lead_id} not found")
    activities = crm_store.query_all(ACTIVITIES_TABLE, tenant, filter_fn=lambda item: item.get("leadId") == lead_id)
    score = calculate_lead_score(lead, activities, get_scoring_criteria(tenant))
    crm_store.patch_entity(LEADS_TABLE, tenant, lead_id, {"score": score})
    return score


def update_all_lead_scores(tenant_id: str) -> int:
    """Rescore every lead of the tenant; returns how many were updated."""
    tenant = crm_store.require_tenant(tenant_id)
    criteria = get_scoring_criteria(tenant)
    activities = _activities_by_lead(tenant)
    updated = 0
    for lead in crm_store.query_all(LEADS_TABLE, tenant):
        score = calculate_lead_score(lead, activities.get(str(lead["id"]), []), criteria)
        crm_store.patch_entity(LEADS_TABLE, tenant, lead["id"], {"score": score})
        updated += 1
    logger.info("Rescored %s leads for tenant %s", updated, tenant)
    return updated


def get_leads_by_quality(tenant_id: str, quality: str) -> List[Dict[str, Any]]:
    if quality not in LEAD_QUALITIES:
        raise ValidationFailedError([{"field": "quality", "message": "quality must be hot, warm or cold", "rule": "enum"}])
    tenant = crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        score = item.get("score") if isinstance(item.get("score"), dict) else {}
        return score.get("quality") == quality

    return crm_store.query_all(
        LEADS_TABLE, tenant, filter_fn=matches, sort_key=lambda item: item["score"].get("total") or 0, descending=True
    )


def refresh_all_tenant_scores() -> Dict[str, int]:
    """Rescore leads of every tenant that has any; a failing tenant does not stop the others."""
    tenants = sorted({str(lead["tenantId"]) for lead in crm_store.query_all_partitions(LEADS_TABLE)})
    updated: Dict[str, int] = {}
    for tenant in tenants:
        try:
            updated[tenant] = update_all_lead_scores(tenant)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Lead score refresh failed for tenant %s", tenant)
    return updated
