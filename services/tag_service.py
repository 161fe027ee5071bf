from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from shared.errors import ConflictError, CRMError, InvalidStateError, NotFoundError
from services import crm_store, validation_service as v

logger = logging.getLogger(__name__)

TABLE = "tags"
APPLICATIONS_TABLE = "tagApplications"

TAG_COLORS = ["default", "red", "orange", "yellow", "green", "blue", "purple", "pink", "gray", "black"]
TAG_ENTITY_TYPES = [
    "lead",
    "customer",
    "task",
    "document",
    "email",
    "email_template",
    "sms",
    "activity",
    "file",
    "note",
    "all",
]
SORT_FIELDS = {"name", "createdAt", "usage"}

TAG_SCHEMA: v.Schema = {
    "name": [v.required(), v.max_length(50)],
    "color": [v.required(), v.one_of(TAG_COLORS)],
    "description": [v.max_length(250)],
    "entityTypes": [
        v.required(),
        v.array(min_items=1),
        v.custom(lambda value, _data: all(item in TAG_ENTITY_TYPES for item in value), message="Unknown entity type"),
    ],
}

DEFAULT_SYSTEM_TAGS = [
    {"name": "Important", "color": "red", "description": "High priority items that need immediate attention", "entityTypes": ["all"]},
    {"name": "Pending", "color": "orange", "description": "Items waiting for further action", "entityTypes": ["all"]},
    {"name": "Approved", "color": "green", "description": "Items that have been reviewed and approved", "entityTypes": ["all"]},
    {"name": "Completed", "color": "blue", "description": "Finished items", "entityTypes": ["all"]},
    {"name": "Archived", "color": "gray", "description": "Items no longer in active use", "entityTypes": ["all"]},
    {"name": "Hot Lead", "color": "red", "description": "Leads with high conversion potential", "entityTypes": ["lead"]},
    {"name": "VIP Customer", "color": "purple", "description": "High-value customers requiring special attention", "entityTypes": ["customer"]},
    {"name": "Urgent", "color": "red", "description": "Tasks requiring immediate attention", "entityTypes": ["task"]},
]


def _zero_usage(entity_types: List[str]) -> Dict[str, int]:
    if "all" in entity_types:
        return {entity_type: 0 for entity_type in TAG_ENTITY_TYPES if entity_type != "all"}
    return {entity_type: 0 for entity_type in entity_types}


def _supports(tag: Dict[str, Any], entity_type: str) -> bool:
    entity_types = tag.get("entityTypes") or []
    return entity_type in entity_types or "all" in entity_types


def _application_id(tag_id: str, entity_type: str, entity_id: str) -> str:
    return f"{tag_id}:{entity_type}:{entity_id}"


def get_tag(tenant_id: str, tag_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(TABLE, crm_store.require_tenant(tenant_id), tag_id)


def _require_tag(tenant: str, tag_id: str) -> Dict[str, Any]:
    tag = crm_store.get_entity(TABLE, tenant, tag_id)
    if tag is None:
        raise NotFoundError(f"Tag with ID {tag_id} not found")
    return tag


def get_tag_by_name(tenant_id: str, name: str) -> Optional[Dict[str, Any]]:
    matches = crm_store.query_all(
        TABLE,
        crm_store.require_tenant(tenant_id),
        filter_fn=lambda item: item.get("name") == name,
    )
    return matches[0] if matches else None


def create_tag(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    name = str(data.get("name") or "").strip()
    if name and get_tag_by_name(tenant, name):
        raise ConflictError(f"Tag with name {name} already exists", code="duplicate_tag")
    entity_types = list(data.get("entityTypes") or ["all"])
    payload = {
        "name": name,
        "color": data.get("color") or "default",
        "description": data.get("description"),
        "entityTypes": entity_types,
        "isSystem": bool(data.get("isSystem")),
        "usage": _zero_usage(entity_types),
        "createdBy": user_id,
        "updatedBy": user_id,
        "tenantId": tenant,
    }
    v.ensure_valid(payload, TAG_SCHEMA, tenant)
    return crm_store.create_entity(TABLE, tenant, payload)


def update_tag(tenant_id: str, tag_id: str, updates: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    tag = _require_tag(tenant, tag_id)
    clean = {key: updates[key] for key in ("name", "color", "description", "entityTypes") if key in updates}

    if tag.get("isSystem"):
        if "name" in clean and clean["name"] != tag.get("name"):
            raise InvalidStateError("Cannot change the name of a system tag")
        if "entityTypes" in clean and list(clean["entityTypes"] or []) != list(tag.get("entityTypes") or []):
            raise InvalidStateError("Cannot change entity types of a system tag")

    if "name" in clean:
        clean["name"] = str(clean["name"] or "").strip()
        if clean["name"] != tag.get("name"):
            existing = get_tag_by_name(tenant, clean["name"])
            if existing and existing["id"] != tag_id:
                raise ConflictError(f"Tag with name {clean['name']} already exists", code="duplicate_tag")

    merged = {**tag, **clean, "updatedBy": user_id}
    if "entityTypes" in clean:
        usage = dict(tag.get("usage") or {})
        for entity_type, count in _zero_usage(list(clean["entityTypes"] or [])).items():
            usage.setdefault(entity_type, count)
        merged["usage"] = usage
    v.ensure_valid(merged, TAG_SCHEMA, tenant)
    return crm_store.upsert_entity(TABLE, tenant, tag_id, merged)


def delete_tag(tenant_id: str, tag_id: str) -> None:
    tenant = crm_store.require_tenant(tenant_id)
    tag = _require_tag(tenant, tag_id)
    if tag.get("isSystem"):
        raise InvalidStateError("Cannot delete a system tag")
    if any(int(count or 0) > 0 for count in (tag.get("usage") or {}).values()):
        raise InvalidStateError("Cannot delete a tag that is in use. Remove it from all entities first.")
    crm_store.delete_entity(TABLE, tenant, tag_id)


def get_tags(
    tenant_id: str,
    *,
    entity_type: Optional[str] = None,
    include_system: bool = True,
    query: Optional[str] = None,
    sort_by: str = "name",
    sort_direction: str = "asc",
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    tenant = crm_store.require_tenant(tenant_id)
    needle = str(query or "").strip().lower()

    def matches(tag: Dict[str, Any]) -> bool:
        if entity_type and not _supports(tag, entity_type):
            return False
        if not include_system and tag.get("isSystem"):
            return False
        if needle:
            haystack = f"{tag.get('name') or ''}\n{tag.get('description') or ''}".lower()
            return needle in haystack
        return True

    sort_field = sort_by if sort_by in SORT_FIELDS else "name"
    if sort_field == "usage" and not entity_type:
        sort_field = "name"

    def sort_key(tag: Dict[str, Any]) -> Any:
        if sort_field == "usage":
            return int((tag.get("usage") or {}).get(entity_type, 0) or 0)
        if sort_field == "createdAt":
            return str(tag.get("createdAt") or "")
        return str(tag.get("name") or "").lower()

    tags = crm_store.query_all(
        TABLE,
        tenant,
        filter_fn=matches,
        sort_key=sort_key,
        descending=str(sort_direction).lower() == "desc",
    )
    if limit:
        tags = tags[: max(1, int(limit))]
    return tags


def _adjust_usage(tenant: str, tag: Dict[str, Any], entity_type: str, delta: int, user_id: str) -> None:
    usage = dict(tag.get("usage") or {})
    usage[entity_type] = max(0, int(usage.get(entity_type, 0) or 0) + delta)
    crm_store.patch_entity(TABLE, tenant, tag["id"], {"usage": usage, "updatedBy": user_id})


def apply_tag(tenant_id: str, tag_id: str, entity_type: str, entity_id: str, user_id: str) -> Dict[str, Any]:
    """Attach a tag to an entity; applying an already-applied tag returns the existing record."""
    tenant = crm_store.require_tenant(tenant_id)
    tag = _require_tag(tenant, tag_id)
    if not _supports(tag, entity_type):
        raise InvalidStateError(f"Tag {tag.get('name')} cannot be applied to entity type {entity_type}")
    application_id = _application_id(tag_id, entity_type, entity_id)
    existing = crm_store.get_entity(APPLICATIONS_TABLE, tenant, application_id)
    if existing is not None:
        return existing
    application = crm_store.create_entity(
        APPLICATIONS_TABLE,
        tenant,
        {
            "tagId": tag_id,
            "entityType": entity_type,
            "entityId": entity_id,
            "createdBy": user_id,
            "updatedBy": user_id,
            "tenantId": tenant,
        },
        entity_id=application_id,
    )
    _adjust_usage(tenant, tag, entity_type, 1, user_id)
    return application


def remove_tag(tenant_id: str, tag_id: str, entity_type: str, entity_id: str, user_id: str) -> None:
    tenant = crm_store.require_tenant(tenant_id)
    application_id = _application_id(tag_id, entity_type, entity_id)
    if crm_store.get_entity(APPLICATIONS_TABLE, tenant, application_id) is None:
        return
    tag = _require_tag(tenant, tag_id)
    crm_store.delete_entity(APPLICATIONS_TABLE, tenant, application_id)
    _adjust_usage(tenant, tag, entity_type, -1, user_id)


def get_tags_for_entity(tenant_id: str, entity_type: str, entity_id: str) -> List[Dict[str, Any]]:
    tenant = crm_store.require_tenant(tenant_id)
    applications = crm_store.query_all(
        APPLICATIONS_TABLE,
        tenant,
        filter_fn=lambda item: item.get("entityType") == entity_type and str(item.get("entityId")) == str(entity_id),
    )
    tags = crm_store.get_entities(TABLE, tenant, [item["tagId"] for item in applications])
    return sorted(tags, key=lambda tag: str(tag.get("name") or "").lower())


def get_entities_by_tag(tenant_id: str, tag_id: str, entity_type: Optional[str] = None) -> Dict[str, List[str]]:
    tenant = crm_store.require_tenant(tenant_id)
    _require_tag(tenant, tag_id)

    def matches(item: Dict[str, Any]) -> bool:
        if item.get("tagId") != tag_id:
            return False
        return not entity_type or item.get("entityType") == entity_type

    grouped: Dict[str, List[str]] = {}
    for application in crm_store.query_all(APPLICATIONS_TABLE, tenant, filter_fn=matches):
        grouped.setdefault(application["entityType"], []).append(str(application["entityId"]))
    return grouped


def create_default_system_tags(tenant_id: str, user_id: str) -> List[Dict[str, Any]]:
    tenant = crm_store.require_tenant(tenant_id)
    created = []
    for tag_data in DEFAULT_SYSTEM_TAGS:
        try:
            if get_tag_by_name(tenant, tag_data["name"]) is None:
                created.append(create_tag(tenant, {**tag_data, "isSystem": True}, user_id))
        except CRMError as exc:
            logger.warning("Error creating default tag %s for tenant %s: %s", tag_data["name"], tenant, exc)
    return created
