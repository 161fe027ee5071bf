from __future__ import annotations

import logging
from datetime import timezone

import azure.functions as func

from function_app import app
from crm_shared import (
    crm_error_response,
    error_response,
    forbidden,
    get_limit,
    json_response,
    parse_body,
    parse_datetime_param,
    resolve_actor_or_error,
)
from shared.errors import CRMError
from services import notification_service
from services.crm_rbac import can_delete_records, can_manage_all
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

NOTIFICATION_ACTIONS = {"read", "dismiss"}


@app.function_name(name="CrmNotifications")
@app.route(route="crm/notifications", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_notifications(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    user_id = str(actor.user_id or actor.email)

    try:
        if req.method == "GET":
            if "since" in req.params:
                feed = notification_service.get_notifications_since(actor.tenant_id, user_id, req.params.get("since") or None)
                return json_response(
                    {"items": feed["items"], "nextCursor": feed["cursor"], "hasMore": feed["hasMore"]},
                    status_code=200,
                    cors=cors,
                )
            if str(req.params.get("unread") or "").lower() in {"1", "true", "yes"}:
                items = notification_service.get_unread_notifications(actor.tenant_id, user_id)
                return json_response({"items": items, "unreadCount": len(items)}, status_code=200, cors=cors)
            items = notification_service.get_user_notifications(actor.tenant_id, user_id, max_results=get_limit(req, default=50))
            return json_response({"items": items}, status_code=200, cors=cors)

        if not can_manage_all(actor.role):
            return forbidden(cors, "Only admin/manager can send notifications")
        recipients = body.get("recipientIds")
        if not isinstance(recipients, list) or not recipients:
            return error_response(cors=cors, status_code=400, message="recipientIds is required", code="validation_error")
        expires_at = parse_datetime_param(body.get("expiresAt"))
        created = notification_service.create_notification(
            actor.tenant_id,
            notif_type=str(body.get("type") or "system"),
            title=str(body.get("title") or ""),
            message=str(body.get("message") or ""),
            recipient_ids=[str(item) for item in recipients],
            created_by=user_id,
            priority=str(body.get("priority") or "medium"),
            link=body.get("link"),
            metadata=body.get("metadata") if isinstance(body.get("metadata"), dict) else None,
            expires_at=expires_at.replace(tzinfo=timezone.utc) if expires_at else None,
        )
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": created}, status_code=201, cors=cors)


@app.function_name(name="CrmNotificationBulkAction")
@app.route(route="crm/notification-actions/{action}", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_notification_bulk_action(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    user_id = str(actor.user_id or actor.email)

    action = str(req.route_params.get("action") or "").strip().lower()
    if action not in NOTIFICATION_ACTIONS:
        return error_response(cors=cors, status_code=400, message="action must be read or dismiss", code="validation_error")
    ids = body.get("ids")
    try:
        if action == "read" and body.get("all"):
            ok = notification_service.mark_all_as_read(actor.tenant_id, user_id)
        elif not isinstance(ids, list) or not ids:
            return error_response(cors=cors, status_code=400, message="ids is required", code="validation_error")
        elif action == "read":
            ok = notification_service.mark_multiple_as_read(actor.tenant_id, [str(item) for item in ids], user_id)
        else:
            ok = notification_service.dismiss_multiple(actor.tenant_id, [str(item) for item in ids], user_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"ok": bool(ok)}, status_code=200, cors=cors)


@app.function_name(name="CrmNotificationDetail")
@app.route(route="crm/notifications/{notification_id}", methods=["GET", "POST", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_notification_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    user_id = str(actor.user_id or actor.email)

    notification_id = str(req.route_params.get("notification_id") or "").strip()
    item = notification_service.get_notification(actor.tenant_id, notification_id)
    if not item:
        return error_response(cors=cors, status_code=404, message="notification not found", code="not_found")
    if user_id not in (item.get("recipientIds") or []) and not can_manage_all(actor.role):
        return forbidden(cors)

    try:
        if req.method == "GET":
            return json_response({"item": item}, status_code=200, cors=cors)
        if req.method == "DELETE":
            if not can_delete_records(actor.role):
                return forbidden(cors, "Only admins can delete notifications")
            deleted = notification_service.delete_notification(actor.tenant_id, notification_id)
            return json_response({"deleted": bool(deleted)}, status_code=200, cors=cors)

        action = str(body.get("action") or "").strip().lower()
        if action == "read":
            ok = notification_service.mark_as_read(actor.tenant_id, notification_id, user_id)
        elif action == "dismiss":
            ok = notification_service.dismiss_notification(actor.tenant_id, notification_id, user_id)
        elif action in {"add_recipients", "remove_recipients"}:
            if not can_manage_all(actor.role):
                return forbidden(cors, "Only admin/manager can change recipients")
            user_ids = [str(value) for value in body.get("userIds") or []]
            handler = (
                notification_service.add_recipients
                if action == "add_recipients"
                else notification_service.remove_recipients
            )
            ok = handler(actor.tenant_id, notification_id, user_ids)
        else:
            return error_response(cors=cors, status_code=400, message="unsupported action", code="validation_error")
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response(
        {"ok": bool(ok), "item": notification_service.get_notification(actor.tenant_id, notification_id)},
        status_code=200,
        cors=cors,
    )
