from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import NotFoundError
from services import crm_store, notification_service, validation_service as v
from services.webhook_service import emit_event

logger = logging.getLogger(__name__)

TABLE = "leads"
# Set by the store or the service, never taken from request data.
SERVER_FIELDS = {"id", "createdAt", "createdBy", "updatedAt"}

LEAD_STATUSES = ["new", "contacted", "qualified", "proposal", "negotiation", "won", "lost", "archived", "converted"]
LEAD_SOURCES = ["website", "referral", "social_media", "email_campaign", "event", "cold_call", "partner", "other"]

LEAD_SCHEMA: v.Schema = {
    "tenantId": [v.tenant_match()],
    "companyId": [v.required()],
    "firstName": [v.required(), v.max_length(50)],
    "lastName": [v.required(), v.max_length(50)],
    "email": [v.required(), v.email()],
    "phone": [v.phone()],
    "status": [v.required(), v.one_of(LEAD_STATUSES)],
    "source": [v.required(), v.one_of(LEAD_SOURCES)],
    "value": [v.min_value(0)],
    "nextContactAt": [v.date_range(after_field="lastContactedAt")],
}


def _updated_at(item: Dict[str, Any]) -> str:
    return str(item.get("updatedAt") or "")


def get_leads(tenant_id: str) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.query_all(TABLE, tenant_id)


def get_lead(tenant_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.get_entity(TABLE, tenant_id, lead_id)


def get_leads_by_ids(tenant_id: str, lead_ids: Iterable[str]) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.get_entities(TABLE, tenant_id, lead_ids)


def get_leads_by_company(tenant_id: str, company_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        if str(item.get("companyId") or "") != str(company_id):
            return False
        return not status or item.get("status") == status

    return crm_store.query_all(TABLE, tenant_id, filter_fn=matches, sort_key=_updated_at, descending=True)


def get_leads_by_assignee(tenant_id: str, user_id: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        if str(item.get("assignedTo") or "") != str(user_id):
            return False
        return not company_id or str(item.get("companyId") or "") == str(company_id)

    return crm_store.query_all(TABLE, tenant_id, filter_fn=matches, sort_key=_updated_at, descending=True)


def get_leads_by_status(tenant_id: str, status: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        if item.get("status") != status:
            return False
        return not company_id or str(item.get("companyId") or "") == str(company_id)

    return crm_store.query_all(TABLE, tenant_id, filter_fn=matches, sort_key=_updated_at, descending=True)


def get_recent_leads(tenant_id: str, company_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    return get_leads_by_company(tenant_id, company_id)[: max(1, int(limit))]


def search_leads(tenant_id: str, term: str, company_id: str) -> List[Dict[str, Any]]:
    leads = get_leads_by_company(tenant_id, company_id)
    needle = str(term or "").strip().lower()
    if not needle:
        return leads

    def matches(lead: Dict[str, Any]) -> bool:
        full_name = f"{lead.get('firstName') or ''} {lead.get('lastName') or ''}".lower()
        return (
            needle in full_name
            or needle in str(lead.get("email") or "").lower()
            or needle in str(lead.get("company") or "").lower()
        )

    return [lead for lead in leads if matches(lead)]


def create_lead(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    payload = {
        **{key: value for key, value in data.items() if key not in SERVER_FIELDS},
        "status": data.get("status") or "new",
        "source": data.get("source") or "other",
        "tags": list(data.get("tags") or []),
        "tenantId": data.get("tenantId", tenant),
        "createdBy": user_id,
        "updatedBy": user_id,
    }
    v.ensure_valid(payload, LEAD_SCHEMA, tenant)
    created = crm_store.create_entity(TABLE, tenant, payload)
    logger.info("Lead %s created for tenant %s", created["id"], tenant)
    emit_event(tenant, "lead.created", created)
    return created


def update_lead(tenant_id: str, lead_id: str, updates: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    existing = crm_store.get_entity(TABLE, tenant, lead_id)
    if existing is None:
        raise NotFoundError(f"Lead {lead_id} not found")
    clean = {key: value for key, value in updates.items() if key not in SERVER_FIELDS}
    merged = {**existing, **clean, "updatedBy": user_id}
    v.ensure_valid(merged, LEAD_SCHEMA, tenant)
    updated = crm_store.upsert_entity(TABLE, tenant, lead_id, merged)
    emit_event(tenant, "lead.updated", updated)
    return updated


def update_lead_status(tenant_id: str, lead_id: str, status: str, user_id: str) -> Dict[str, Any]:
    before = get_lead(tenant_id, lead_id)
    if before is None:
        raise NotFoundError(f"Lead {lead_id} not found")
    updated = update_lead(tenant_id, lead_id, {"status": status}, user_id)
    if before.get("status") != status and updated.get("assignedTo"):
        notification_service.create_notification(
            tenant_id,
            notif_type="lead_status_changed",
            title="Lead status changed",
            message=f"{updated.get('firstName')} {updated.get('lastName')} moved to {status}",
            recipient_ids=[str(updated["assignedTo"])],
            created_by=user_id,
            link=f"/leads/{lead_id}",
            metadata={"leadId": lead_id, "previousStatus": before.get("status"), "status": status},
        )
    return updated


def delete_lead(tenant_id: str, lead_id: str) -> None:
    tenant = crm_store.require_tenant(tenant_id)
    if not crm_store.delete_entity(TABLE, tenant, lead_id):
        raise NotFoundError(f"Lead {lead_id} not found")
    emit_event(tenant, "lead.deleted", {"id": lead_id})


def add_tags_to_lead(tenant_id: str, lead_id: str, tags: Iterable[str], user_id: str) -> Dict[str, Any]:
    existing = get_lead(tenant_id, lead_id)
    if existing is None:
        raise NotFoundError(f"Lead {lead_id} not found")
    merged: List[str] = list(existing.get("tags") or [])
    for tag in tags:
        if tag and tag not in merged:
            merged.append(tag)
    return update_lead(tenant_id, lead_id, {"tags": merged}, user_id)


def assign_lead(tenant_id: str, lead_id: str, assignee_id: str, user_id: str) -> Dict[str, Any]:
    updated = update_lead(
        tenant_id, lead_id, {"assignedTo": assignee_id, "assignedAt": crm_store.utc_now_iso()}, user_id
    )
    if str(assignee_id) != str(user_id):
        notification_service.create_notification(
            tenant_id,
            notif_type="lead_assigned",
            title="New lead assigned",
            message=f"{updated.get('firstName')} {updated.get('lastName')} was assigned to you",
            recipient_ids=[str(assignee_id)],
            created_by=user_id,
            link=f"/leads/{lead_id}",
            metadata={"leadId": lead_id},
        )
    return updated


def get_lead_statistics(tenant_id: str, company_id: Optional[str] = None) -> Dict[str, Any]:
    leads = get_leads_by_company(tenant_id, company_id) if company_id else get_leads(tenant_id)
    by_status = {status: 0 for status in LEAD_STATUSES}
    by_source = {source: 0 for source in LEAD_SOURCES}
    total_value = 0.0
    for lead in leads:
        if lead.get("status") in by_status:
            by_status[lead["status"]] += 1
        if lead.get("source") in by_source:
            by_source[lead["source"]] += 1
        try:
            total_value += float(lead.get("value") or 0)
        except (TypeError, ValueError):
            continue
    return {
        "totalLeads": len(leads),
        "byStatus": by_status,
        "bySource": by_source,
        "totalValue": total_value,
    }
