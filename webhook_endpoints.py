from __future__ import annotations

import logging
from typing import Any, Dict

import azure.functions as func

from function_app import app
from crm_shared import (
    crm_error_response,
    error_response,
    forbidden,
    get_limit,
    json_response,
    parse_body,
    resolve_actor_or_error,
)
from shared.config import get_bool_setting
from shared.errors import CRMError
from services import webhook_service
from services.crm_rbac import can_manage_settings
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

HIDDEN_FIELDS = {"secret", "verificationCode"}


def _public(webhook: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in webhook.items() if key not in HIDDEN_FIELDS}


@app.function_name(name="CrmWebhooks")
@app.route(route="crm/webhooks", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_webhooks(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage webhooks")

    try:
        if req.method == "GET":
            include_inactive = str(req.params.get("activeOnly") or "").lower() not in {"1", "true", "yes"}
            items = webhook_service.list_webhooks(actor.tenant_id, include_inactive=include_inactive)
            return json_response(
                {"items": [_public(item) for item in items], "eventTypes": webhook_service.WEBHOOK_EVENT_TYPES},
                status_code=200,
                cors=cors,
            )
        created = webhook_service.create_webhook(actor.tenant_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    # The signing secret is only returned once, at creation.
    item = _public(created)
    item["secret"] = created.get("secret")
    return json_response({"item": item}, status_code=201, cors=cors)


@app.function_name(name="CrmWebhookDetail")
@app.route(route="crm/webhooks/{webhook_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_webhook_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage webhooks")

    webhook_id = str(req.route_params.get("webhook_id") or "").strip()
    try:
        if req.method == "GET":
            webhook = webhook_service.get_webhook(actor.tenant_id, webhook_id)
            if not webhook:
                return error_response(cors=cors, status_code=404, message="webhook not found", code="not_found")
            return json_response({"item": _public(webhook)}, status_code=200, cors=cors)
        if req.method == "DELETE":
            webhook_service.delete_webhook(actor.tenant_id, webhook_id)
            return json_response({"deleted": True}, status_code=200, cors=cors)
        updated = webhook_service.update_webhook(actor.tenant_id, webhook_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": _public(updated)}, status_code=200, cors=cors)


@app.function_name(name="CrmWebhookAction")
@app.route(route="crm/webhooks/{webhook_id}/{action}", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_webhook_action(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage webhooks")

    webhook_id = str(req.route_params.get("webhook_id") or "").strip()
    action = str(req.route_params.get("action") or "").strip().lower()
    try:
        if action == "logs":
            logs = webhook_service.get_webhook_logs(
                actor.tenant_id,
                webhook_id,
                limit=get_limit(req, default=50),
                status=req.params.get("status") or None,
            )
            return json_response({"items": logs}, status_code=200, cors=cors)
        if req.method != "POST":
            return error_response(cors=cors, status_code=405, message="method not allowed", code="method_not_allowed")
        if action == "verify":
            code = str(body.get("verificationCode") or body.get("code") or "").strip()
            if not code:
                return error_response(cors=cors, status_code=400, message="verificationCode is required", code="validation_error")
            webhook = webhook_service.verify_webhook(actor.tenant_id, webhook_id, code)
        elif action == "reactivate":
            webhook = webhook_service.reactivate_webhook(actor.tenant_id, webhook_id)
        elif action == "test":
            webhook = webhook_service.get_webhook(actor.tenant_id, webhook_id)
            if not webhook:
                return error_response(cors=cors, status_code=404, message="webhook not found", code="not_found")
            payload = webhook_service.build_payload("system.test", {"message": "Test event"}, actor.tenant_id)
            delivered = webhook_service.deliver_webhook(webhook, payload, {"max_retries": 0})
            return json_response({"delivered": delivered}, status_code=200, cors=cors)
        else:
            return error_response(cors=cors, status_code=404, message="unknown webhook action", code="not_found")
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": _public(webhook)}, status_code=200, cors=cors)


@app.function_name(name="WebhookRetryProcessor")
@app.timer_trigger(schedule="0 * * * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def webhook_retry_processor(timer: func.TimerRequest) -> None:  # pylint: disable=unused-argument
    if get_bool_setting("DISABLE_WEBHOOK_RETRIES"):
        logger.info("WebhookRetryProcessor disabled by DISABLE_WEBHOOK_RETRIES")
        return
    result = webhook_service.process_webhook_retries()
    if result["retried"]:
        logger.info("WebhookRetryProcessor retried %s deliveries, %s delivered", result["retried"], result["delivered"])
