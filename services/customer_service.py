from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import NotFoundError
from services import crm_store, validation_service as v
from services.webhook_service import emit_event

logger = logging.getLogger(__name__)

TABLE = "customers"
# Set by the store or the service, never taken from request data.
SERVER_FIELDS = {"id", "createdAt", "createdBy", "updatedAt"}

CUSTOMER_STATUSES = ["active", "inactive", "churned"]
CUSTOMER_SOURCES = ["lead_conversion", "direct", "referral", "partner", "other"]

CONTACT_SCHEMA: v.Schema = {
    "firstName": [v.required(), v.max_length(50)],
    "lastName": [v.max_length(50)],
    "email": [v.email()],
    "phone": [v.phone()],
}

CUSTOMER_SCHEMA: v.Schema = {
    "tenantId": [v.tenant_match()],
    "companyId": [v.required()],
    "name": [v.required(), v.max_length(100)],
    "status": [v.required(), v.one_of(CUSTOMER_STATUSES)],
    "source": [v.required(), v.one_of(CUSTOMER_SOURCES)],
    "email": [v.email()],
    "phone": [v.phone()],
    "website": [v.url(require_protocol=True)],
    "industry": [v.max_length(50)],
    "contacts": [v.array(CONTACT_SCHEMA)],
    "totalRevenue": [v.min_value(0)],
}


def _updated_at(item: Dict[str, Any]) -> str:
    return str(item.get("updatedAt") or "")


def get_customers(tenant_id: str) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.query_all(TABLE, tenant_id)


def get_customer(tenant_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.get_entity(TABLE, tenant_id, customer_id)


def get_customers_by_ids(tenant_id: str, customer_ids: Iterable[str]) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)
    return crm_store.get_entities(TABLE, tenant_id, customer_ids)


def get_customers_by_company(tenant_id: str, company_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        if str(item.get("companyId") or "") != str(company_id):
            return False
        return not status or item.get("status") == status

    return crm_store.query_all(TABLE, tenant_id, filter_fn=matches, sort_key=_updated_at, descending=True)


def get_customers_by_assignee(tenant_id: str, user_id: str, company_id: Optional[str] = None) -> List[Dict[str, Any]]:
    crm_store.require_tenant(tenant_id)

    def matches(item: Dict[str, Any]) -> bool:
        if str(item.get("assignedTo") or "") != str(user_id):
            return False
        return not company_id or str(item.get("companyId") or "") == str(company_id)

    return crm_store.query_all(TABLE, tenant_id, filter_fn=matches, sort_key=_updated_at, descending=True)


def get_recent_customers(tenant_id: str, company_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    return get_customers_by_company(tenant_id, company_id)[: max(1, int(limit))]


def _contact_matches(contact: Dict[str, Any], term: str) -> bool:
    full_name = f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip().lower()
    return term in full_name or term in str(contact.get("email") or "").lower()


def search_customers(tenant_id: str, term: str, company_id: str) -> List[Dict[str, Any]]:
    """Case-insensitive substring search over name, email and contacts."""
    customers = get_customers_by_company(tenant_id, company_id)
    needle = str(term or "").strip().lower()
    if not needle:
        return customers
    results = []
    for customer in customers:
        if needle in str(customer.get("name") or "").lower() or needle in str(customer.get("email") or "").lower():
            results.append(customer)
            continue
        contacts = customer.get("contacts") if isinstance(customer.get("contacts"), list) else []
        if any(isinstance(contact, dict) and _contact_matches(contact, needle) for contact in contacts):
            results.append(customer)
    return results


def create_customer(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    payload = {
        **{key: value for key, value in data.items() if key not in SERVER_FIELDS},
        "status": data.get("status") or "active",
        "source": data.get("source") or "other",
        "contacts": list(data.get("contacts") or []),
        "tags": list(data.get("tags") or []),
        "tenantId": data.get("tenantId", tenant),
        "createdBy": user_id,
        "updatedBy": user_id,
    }
    v.ensure_valid(payload, CUSTOMER_SCHEMA, tenant)
    created = crm_store.create_entity(TABLE, tenant, payload)
    logger.info("Customer %s created for tenant %s", created["id"], tenant)
    emit_event(tenant, "customer.created", created)
    return created


def update_customer(tenant_id: str, customer_id: str, updates: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    existing = crm_store.get_entity(TABLE, tenant, customer_id)
    if existing is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    clean = {key: value for key, value in updates.items() if key not in SERVER_FIELDS}
    merged = {**existing, **clean, "updatedBy": user_id}
    v.ensure_valid(merged, CUSTOMER_SCHEMA, tenant)
    updated = crm_store.upsert_entity(TABLE, tenant, customer_id, merged)
    emit_event(tenant, "customer.updated", updated)
    return updated


def delete_customer(tenant_id: str, customer_id: str) -> None:
    tenant = crm_store.require_tenant(tenant_id)
    if not crm_store.delete_entity(TABLE, tenant, customer_id):
        raise NotFoundError(f"Customer {customer_id} not found")
    logger.info("Customer %s deleted for tenant %s", customer_id, tenant)
    emit_event(tenant, "customer.deleted", {"id": customer_id})


def add_tags_to_customer(tenant_id: str, customer_id: str, tags: Iterable[str], user_id: str) -> Dict[str, Any]:
    existing = get_customer(tenant_id, customer_id)
    if existing is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    merged: List[str] = list(existing.get("tags") or [])
    for tag in tags:
        if tag and tag not in merged:
            merged.append(tag)
    return update_customer(tenant_id, customer_id, {"tags": merged}, user_id)


def assign_customer(tenant_id: str, customer_id: str, assignee_id: str, user_id: str) -> Dict[str, Any]:
    return update_customer(tenant_id, customer_id, {"assignedTo": assignee_id}, user_id)


def convert_lead_to_customer(
    tenant_id: str,
    lead_id: str,
    user_id: str,
    customer_data: Optional[Dict[str, Any]] = None,
    lead_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create a customer from a lead.

    The lead's person becomes the primary contact and the customer is named after
    the lead's company (or the person when no company is set). Fields given in
    ``customer_data`` override the derived ones. The stored lead is marked
    converted when it exists.
    """
    tenant = crm_store.require_tenant(tenant_id)
    lead = lead_data or crm_store.get_entity("leads", tenant, lead_id)
    if lead is None:
        raise NotFoundError(f"Lead {lead_id} not found")

    primary_contact = {
        "firstName": lead.get("firstName"),
        "lastName": lead.get("lastName"),
        "email": lead.get("email"),
        "phone": lead.get("phone"),
        "title": lead.get("title"),
        "isPrimary": True,
    }
    customer = {
        "companyId": lead.get("companyId"),
        "name": lead.get("company") or f"{lead.get('firstName') or ''} {lead.get('lastName') or ''}".strip(),
        "status": "active",
        "source": "lead_conversion",
        "email": lead.get("email"),
        "phone": lead.get("phone"),
        "contacts": [{key: value for key, value in primary_contact.items() if value is not None}],
        "assignedTo": lead.get("assignedTo"),
        "notes": lead.get("notes"),
        "tags": lead.get("tags") or [],
        "convertedFromLeadId": lead_id,
        **(customer_data or {}),
    }
    created = create_customer(tenant, {key: value for key, value in customer.items() if value is not None}, user_id)
    if crm_store.get_entity("leads", tenant, lead_id) is not None:
        crm_store.patch_entity(
            "leads",
            tenant,
            lead_id,
            {"status": "converted", "convertedToCustomerId": created["id"], "updatedBy": user_id},
        )
    return created


def get_customer_statistics(tenant_id: str, company_id: Optional[str] = None) -> Dict[str, Any]:
    customers = get_customers_by_company(tenant_id, company_id) if company_id else get_customers(tenant_id)
    by_status = {status: 0 for status in CUSTOMER_STATUSES}
    by_source = {source: 0 for source in CUSTOMER_SOURCES}
    for customer in customers:
        status = customer.get("status")
        source = customer.get("source")
        if status in by_status:
            by_status[status] += 1
        if source in by_source:
            by_source[source] += 1
    return {
        "totalCustomers": len(customers),
        "byStatus": by_status,
        "bySource": by_source,
    }
