from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from shared.errors import NotFoundError
from services import crm_store, lead_service, validation_service as v

logger = logging.getLogger(__name__)

RULES_TABLE = "leadAssignmentRules"
USERS_TABLE = "users"
ACTIVITIES_TABLE = "activities"
SETTINGS_TABLE = "settings"
STATE_ID = "leadAssignment"
SYSTEM_USER = "system"

ASSIGNMENT_STRATEGIES = ["round_robin", "load_balanced", "first_available"]
# Leads in these states no longer count towards a user's workload.
CLOSED_STATUSES = {"won", "lost", "converted", "archived"}
CONVERTED_STATUSES = {"won", "converted"}
CRITERIA_LISTS = ["leadSources", "leadStatus", "territory", "industry", "companySize"]
RULE_FIELDS = {"name", "description", "isActive", "criteria", "assignTo", "priority"}

RULE_SCHEMA: v.Schema = {
    "name": [v.required(), v.max_length(100)],
    "description": [v.max_length(500)],
    "priority": [v.required(), v.numeric(), v.min_value(0)],
    "criteria": [v.custom(lambda value, _data: isinstance(value, dict), message="criteria must be an object")],
    "assignTo": [
        v.required(),
        v.custom(lambda value, _data: isinstance(value, dict), message="assignTo must be an object"),
        v.custom(
            lambda value, _data: not isinstance(value, dict)
            or value.get("strategy", "round_robin") in ASSIGNMENT_STRATEGIES,
            message="strategy must be round_robin, load_balanced or first_available",
        ),
    ],
}


def _result(lead_id: str, success: bool, **extra: Any) -> Dict[str, Any]:
    return {"success": success, "leadId": lead_id, **extra}


def _priority(rule: Dict[str, Any]) -> tuple:
    try:
        return (float(rule.get("priority") or 0), str(rule.get("createdAt") or ""))
    except (TypeError, ValueError):
        return (0.0, str(rule.get("createdAt") or ""))


def get_assignment_rules(tenant_id: str, active_only: bool = False) -> List[Dict[str, Any]]:
    """Rules in evaluation order: lowest priority number first."""
    tenant = crm_store.require_tenant(tenant_id)
    filter_fn = (lambda item: bool(item.get("isActive"))) if active_only else None
    return crm_store.query_all(RULES_TABLE, tenant, filter_fn=filter_fn, sort_key=_priority)


def get_assignment_rule(tenant_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(RULES_TABLE, crm_store.require_tenant(tenant_id), rule_id)


def create_assignment_rule(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    payload = {key: value for key, value in data.items() if key in RULE_FIELDS}
    payload.update(
        {
            "isActive": bool(data.get("isActive", True)),
            "criteria": dict(data.get("criteria") or {}),
            "priority": data.get("priority", 0),
            "createdBy": user_id,
        }
    )
    v.ensure_valid(payload, RULE_SCHEMA, tenant)
    created = crm_store.create_entity(RULES_TABLE, tenant, payload)
    logger.info("Lead assignment rule %s created for tenant %s", created["id"], tenant)
    return created


def update_assignment_rule(tenant_id: str, rule_id: str, updates: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    existing = crm_store.get_entity(RULES_TABLE, tenant, rule_id)
    if existing is None:
        raise NotFoundError(f"Assignment rule {rule_id} not found")
    changes = {key: value for key, value in updates.items() if key in RULE_FIELDS}
    v.ensure_valid({**existing, **changes}, RULE_SCHEMA, tenant)
    return crm_store.patch_entity(RULES_TABLE, tenant, rule_id, {**changes, "updatedBy": user_id})


def delete_assignment_rule(tenant_id: str, rule_id: str, user_id: str) -> Dict[str, Any]:
    """Deactivate a rule; its history stays readable."""
    return update_assignment_rule(tenant_id, rule_id, {"isActive": False}, user_id)


def _territory(lead: Dict[str, Any]) -> Optional[str]:
    company = lead.get("company") if isinstance(lead.get("company"), dict) else {}
    address = company.get("address") if isinstance(company.get("address"), dict) else {}
    return address.get("state") or address.get("country")


def _criterion_value(lead: Dict[str, Any], criterion: str) -> Any:
    company = lead.get("company") if isinstance(lead.get("company"), dict) else {}
    if criterion == "leadSources":
        return lead.get("source")
    if criterion == "leadStatus":
        return lead.get("status")
    if criterion == "territory":
        return _territory(lead)
    if criterion == "industry":
        return company.get("industry")
    return company.get("size")


def rule_matches(lead: Dict[str, Any], rule: Dict[str, Any]) -> bool:
    criteria = rule.get("criteria") if isinstance(rule.get("criteria"), dict) else {}
    for criterion in CRITERIA_LISTS:
        allowed = criteria.get(criterion) or []
        if allowed and _criterion_value(lead, criterion) not in allowed:
            return False
    min_score = criteria.get("minLeadScore") or 0
    if min_score > 0:
        score = lead.get("score") if isinstance(lead.get("score"), dict) else {}
        if (score.get("total") or 0) < min_score:
            return False
    return True


def find_matching_rule(lead: Dict[str, Any], rules: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return next((rule for rule in rules if rule.get("isActive") and rule_matches(lead, rule)), None)


def _open_lead_counts(tenant: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for lead in crm_store.query_all(lead_service.TABLE, tenant, filter_fn=lambda item: bool(item.get("assignedTo"))):
        if lead.get("status") not in CLOSED_STATUSES:
            assignee = str(lead["assignedTo"])
            counts[assignee] = counts.get(assignee, 0) + 1
    return counts


def _eligible_users(tenant: str, assign_to: Dict[str, Any]) -> List[str]:
    users = {str(user["id"]): user for user in crm_store.query_all(USERS_TABLE, tenant)}
    user_ids = [str(user_id) for user_id in assign_to.get("userIds") or []]
    roles = assign_to.get("roles") or []
    if user_ids:
        candidates = [users[user_id] for user_id in user_ids if user_id in users]
    elif roles:
        candidates = [user for user in users.values() if user.get("role") in roles]
    else:
        candidates = list(users.values())
    return [str(user["id"]) for user in candidates if (user.get("status") or "active") == "active"]


def _next_round_robin(tenant: str, rule_id: str, candidates: List[str]) -> str:
    state = crm_store.get_entity(SETTINGS_TABLE, tenant, STATE_ID) or {}
    last_assigned = state.get("ruleLastAssignee") if isinstance(state.get("ruleLastAssignee"), dict) else {}
    previous = last_assigned.get(rule_id)
    index = (candidates.index(previous) + 1) % len(candidates) if previous in candidates else 0
    chosen = candidates[index]
    crm_store.upsert_entity(
        SETTINGS_TABLE, tenant, STATE_ID, {**state, "ruleLastAssignee": {**last_assigned, rule_id: chosen}}
    )
    return chosen


def determine_assignee(tenant_id: str, rule: Dict[str, Any]) -> Optional[str]:
    tenant = crm_store.require_tenant(tenant_id)
    assign_to = rule.get("assignTo") if isinstance(rule.get("assignTo"), dict) else {}
    candidates = _eligible_users(tenant, assign_to)
    strategy = assign_to.get("strategy") or "round_robin"
    max_leads = assign_to.get("maxLeadsPerUser")
    if candidates and (max_leads or strategy == "load_balanced"):
        counts = _open_lead_counts(tenant)
        if max_leads:
            candidates = [user_id for user_id in candidates if counts.get(user_id, 0) < int(max_leads)]
        if strategy == "load_balanced":
            # sorted() is stable, so ties keep the configured order
            candidates = sorted(candidates, key=lambda user_id: counts.get(user_id, 0))
    if not candidates:
        return None
    if strategy == "round_robin":
        return _next_round_robin(tenant, str(rule["id"]), candidates)
    return candidates[0]


def auto_assign_lead(tenant_id: str, lead_id: str, user_id: str = SYSTEM_USER) -> Dict[str, Any]:
    """Assign an unassigned lead with the first active rule that matches it."""
    tenant = crm_store.require_tenant(tenant_id)
    lead = lead_service.get_lead(tenant, lead_id)
    if lead is None:
        return _result(lead_id, False, message="Lead not found")
    if lead.get("assignedTo"):
        return _result(lead_id, False, message="Lead is already assigned")
    rules = get_assignment_rules(tenant, active_only=True)
    if not rules:
        return _result(lead_id, False, message="No active assignment rules found")
    rule = find_matching_rule(lead, rules)
    if rule is None:
        return _result(lead_id, False, message="No matching assignment rules found")
    assignee = determine_assignee(tenant, rule)
    if assignee is None:
        return _result(lead_id, False, message="No eligible users found to assign lead")

    lead_service.assign_lead(tenant, lead_id, assignee, user_id)
    crm_store.create_entity(
        ACTIVITIES_TABLE,
        tenant,
        {
            "leadId": lead_id,
            "type": "system",
            "action": "assign",
            "description": f"Automatically assigned via rule: {rule.get('name')}",
            "data": {"assignedTo": assignee, "ruleId": rule["id"]},
            "createdBy": user_id,
        },
    )
    logger.info("Lead %s auto-assigned to %s by rule %s (tenant %s)", lead_id, assignee, rule["id"], tenant)
    return _result(lead_id, True, assignedTo=assignee, ruleName=rule.get("name"))


def auto_assign_all_leads(tenant_id: str, user_id: str = SYSTEM_USER) -> List[Dict[str, Any]]:
    tenant = crm_store.require_tenant(tenant_id)
    unassigned = crm_store.query_all(
        lead_service.TABLE,
        tenant,
        filter_fn=lambda item: not item.get("assignedTo") and item.get("status") not in CLOSED_STATUSES,
    )
    # One at a time, so round-robin and workload counts see each assignment.
    return [auto_assign_lead(tenant, lead["id"], user_id) for lead in unassigned]


def _response_hours(lead: Dict[str, Any], activities: List[Dict[str, Any]]) -> Optional[float]:
    assigned_at = crm_store.parse_iso(lead.get("assignedAt"))
    if assigned_at is None:
        return None
    later = [crm_store.parse_iso(item.get("createdAt")) for item in activities if item.get("type") != "system"]
    later = [moment for moment in later if moment is not None and moment > assigned_at]
    if not later:
        return None
    return (min(later) - assigned_at) / timedelta(hours=1)


def get_assignment_stats(tenant_id: str) -> List[Dict[str, Any]]:
    """Per-user assignment, conversion and first-response figures."""
    tenant = crm_store.require_tenant(tenant_id)
    leads = crm_store.query_all(lead_service.TABLE, tenant, filter_fn=lambda item: bool(item.get("assignedTo")))
    activities: Dict[str, List[Dict[str, Any]]] = {}
    for activity in crm_store.query_all(ACTIVITIES_TABLE, tenant, filter_fn=lambda item: bool(item.get("leadId"))):
        activities.setdefault(str(activity["leadId"]), []).append(activity)

    stats = []
    for user in crm_store.query_all(USERS_TABLE, tenant):
        user_id = str(user["id"])
        owned = [lead for lead in leads if str(lead["assignedTo"]) == user_id]
        converted = sum(1 for lead in owned if lead.get("status") in CONVERTED_STATUSES)
        responses = [_response_hours(lead, activities.get(str(lead["id"]), [])) for lead in owned]
        responses = [hours for hours in responses if hours is not None]
        assigned_times = [str(lead["assignedAt"]) for lead in owned if lead.get("assignedAt")]
        stats.append(
            {
                "userId": user_id,
                "displayName": user.get("displayName") or user.get("email") or user_id,
                "leadsAssigned": len(owned),
                "leadsConverted": converted,
                "conversionRate": converted / len(owned) * 100 if owned else 0,
                "avgResponseTime": sum(responses) / len(responses) if responses else 0,
                "lastAssignedAt": max(assigned_times) if assigned_times else None,
            }
        )
    return stats
