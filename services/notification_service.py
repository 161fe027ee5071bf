from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from services import crm_store, validation_service as v

logger = logging.getLogger(__name__)

TABLE = "notifications"

NOTIFICATION_TYPES = [
    "lead_assigned",
    "lead_status_changed",
    "customer_assigned",
    "task_assigned",
    "task_due_soon",
    "task_overdue",
    "mention",
    "comment",
    "system",
    "team_invite",
    "campaign_completed",
    "report_available",
    "message",
    "custom",
]
NOTIFICATION_PRIORITIES = ["low", "medium", "high", "urgent"]
DEFAULT_EXPIRY_DAYS = 30
POLL_PAGE_SIZE = 50

NOTIFICATION_SCHEMA: v.Schema = {
    "type": [v.required(), v.one_of(NOTIFICATION_TYPES)],
    "title": [v.required(), v.max_length(200)],
    "message": [v.required(), v.max_length(2000)],
    "recipientIds": [v.required(), v.array(min_items=1)],
    "priority": [v.one_of(NOTIFICATION_PRIORITIES)],
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ids(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


def _is_expired(item: Dict[str, Any], now: datetime) -> bool:
    expires_at = crm_store.parse_iso(item.get("expiresAt"))
    return expires_at is not None and expires_at <= now


def _is_recipient(item: Dict[str, Any], user_id: str) -> bool:
    return user_id in _ids(item.get("recipientIds"))


def _created_at(item: Dict[str, Any]) -> tuple:
    return (str(item.get("createdAt") or ""), str(item.get("id") or ""))


def create_notification(
    tenant_id: str,
    *,
    notif_type: str,
    title: str,
    message: str,
    recipient_ids: Iterable[str],
    created_by: Optional[str] = None,
    priority: str = "medium",
    link: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    expires_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    recipients: List[str] = []
    for recipient in recipient_ids:
        if recipient and str(recipient) not in recipients:
            recipients.append(str(recipient))
    payload = {
        "type": notif_type,
        "title": title,
        "message": message,
        "recipientIds": recipients,
        "readBy": [],
        "dismissedBy": [],
        "priority": priority or "medium",
        "link": link,
        "metadata": metadata or None,
        "expiresAt": crm_store.to_iso(expires_at or (_now() + timedelta(days=DEFAULT_EXPIRY_DAYS))),
        "createdBy": created_by,
        "tenantId": tenant,
    }
    v.ensure_valid(payload, NOTIFICATION_SCHEMA, tenant)
    return crm_store.create_entity(TABLE, tenant, payload)


def get_notification(tenant_id: str, notification_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(TABLE, crm_store.require_tenant(tenant_id), notification_id)


def get_unread_notifications(tenant_id: str, user_id: str) -> List[Dict[str, Any]]:
    """Notifications addressed to the user that are not read, dismissed or expired."""
    now = _now()
    user = str(user_id)

    def matches(item: Dict[str, Any]) -> bool:
        return (
            _is_recipient(item, user)
            and user not in _ids(item.get("readBy"))
            and user not in _ids(item.get("dismissedBy"))
            and not _is_expired(item, now)
        )

    return crm_store.query_all(TABLE, crm_store.require_tenant(tenant_id), filter_fn=matches, sort_key=_created_at, descending=True)


def get_user_notifications(tenant_id: str, user_id: str, max_results: int = 100) -> List[Dict[str, Any]]:
    user = str(user_id)

    def matches(item: Dict[str, Any]) -> bool:
        return _is_recipient(item, user) and user not in _ids(item.get("dismissedBy"))

    rows = crm_store.query_all(TABLE, crm_store.require_tenant(tenant_id), filter_fn=matches, sort_key=_created_at, descending=True)
    return rows[: max(1, int(max_results))]


def get_notifications_since(
    tenant_id: str, user_id: str, cursor: Optional[str] = None, limit: int = POLL_PAGE_SIZE
) -> Dict[str, Any]:
    """
    Polling feed: the oldest page of notifications created after ``cursor``.
    Ids are time-ordered, so ``cursor`` is the last id handed out and ``hasMore``
    tells the client to poll again straight away.
    """
    user = str(user_id)

    def matches(item: Dict[str, Any]) -> bool:
        return _is_recipient(item, user) and user not in _ids(item.get("dismissedBy"))

    page, next_cursor = crm_store.list_entities(
        TABLE, crm_store.require_tenant(tenant_id), limit=limit, cursor=cursor, filter_fn=matches
    )
    return {
        "items": page,
        "cursor": page[-1]["id"] if page else cursor,
        "hasMore": next_cursor is not None,
    }


def _add_to_list(
    tenant_id: str, notification_id: str, field: str, values: Iterable[str], recipients_only: bool = False
) -> bool:
    additions = _ids(list(values))
    tenant = crm_store.require_tenant(tenant_id)
    item = crm_store.get_entity(TABLE, tenant, notification_id)
    if item is None:
        logger.warning("Notification %s not found for tenant %s", notification_id, tenant)
        return False
    if recipients_only and not all(_is_recipient(item, value) for value in additions):
        logger.warning("Notification %s is not addressed to %s", notification_id, additions)
        return False
    current = _ids(item.get(field))
    changed = False
    for value in additions:
        if value not in current:
            current.append(value)
            changed = True
    if changed:
        crm_store.patch_entity(TABLE, tenant, notification_id, {field: current})
    return True


def mark_as_read(tenant_id: str, notification_id: str, user_id: str) -> bool:
    return _add_to_list(tenant_id, notification_id, "readBy", [user_id], recipients_only=True)


def mark_multiple_as_read(tenant_id: str, notification_ids: Iterable[str], user_id: str) -> bool:
    results = [mark_as_read(tenant_id, notification_id, user_id) for notification_id in notification_ids]
    return bool(results) and all(results)


def mark_all_as_read(tenant_id: str, user_id: str) -> bool:
    unread = get_unread_notifications(tenant_id, user_id)
    for item in unread:
        mark_as_read(tenant_id, item["id"], user_id)
    return True


def dismiss_notification(tenant_id: str, notification_id: str, user_id: str) -> bool:
    return _add_to_list(tenant_id, notification_id, "dismissedBy", [user_id], recipients_only=True)


def dismiss_multiple(tenant_id: str, notification_ids: Iterable[str], user_id: str) -> bool:
    results = [dismiss_notification(tenant_id, notification_id, user_id) for notification_id in notification_ids]
    return bool(results) and all(results)


def add_recipients(tenant_id: str, notification_id: str, user_ids: Iterable[str]) -> bool:
    return _add_to_list(tenant_id, notification_id, "recipientIds", user_ids)


def remove_recipients(tenant_id: str, notification_id: str, user_ids: Iterable[str]) -> bool:
    tenant = crm_store.require_tenant(tenant_id)
    item = crm_store.get_entity(TABLE, tenant, notification_id)
    if item is None:
        return False
    removing = {str(user_id) for user_id in user_ids}
    remaining = [recipient for recipient in _ids(item.get("recipientIds")) if recipient not in removing]
    crm_store.patch_entity(TABLE, tenant, notification_id, {"recipientIds": remaining})
    return True


def delete_notification(tenant_id: str, notification_id: str) -> bool:
    return crm_store.delete_entity(TABLE, crm_store.require_tenant(tenant_id), notification_id)


def delete_expired_notifications(tenant_id: str) -> int:
    tenant = crm_store.require_tenant(tenant_id)
    now = _now()
    expired = crm_store.query_all(TABLE, tenant, filter_fn=lambda item: _is_expired(item, now))
    deleted = 0
    for item in expired:
        if crm_store.delete_entity(TABLE, tenant, item["id"]):
            deleted += 1
    if deleted:
        logger.info("Deleted %s expired notifications for tenant %s", deleted, tenant)
    return deleted
