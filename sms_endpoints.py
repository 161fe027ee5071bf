from __future__ import annotations

import logging

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
from shared.errors import CRMError
from services import sms_service
from services.crm_rbac import can_manage_all, can_manage_settings, has_permission
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


@app.function_name(name="CrmSmsMessages")
@app.route(route="crm/sms", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_sms_messages(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    try:
        if req.method == "GET":
            if not can_manage_all(actor.role):
                return forbidden(cors, "Only admin/manager can view SMS history")
            items, next_cursor = sms_service.list_sms(
                actor.tenant_id,
                limit=get_limit(req, default=50),
                cursor=req.params.get("cursor"),
                status=req.params.get("status") or None,
            )
            return json_response({"items": items, "nextCursor": next_cursor}, status_code=200, cors=cors)

        if not has_permission(actor.role, "update:leads"):
            return forbidden(cors, "SMS sending is not permitted")
        to = str(body.get("to") or "").strip()
        if not to:
            return error_response(cors=cors, status_code=400, message="to is required", code="validation_error")
        user_id = str(actor.user_id or actor.email)
        template_id = str(body.get("templateId") or "").strip()
        if template_id:
            variables = body.get("variables") if isinstance(body.get("variables"), dict) else {}
            message = sms_service.send_templated_sms(actor.tenant_id, template_id, to, variables, user_id=user_id)
        else:
            message = sms_service.send_sms(
                actor.tenant_id,
                to,
                str(body.get("body") or ""),
                user_id=user_id,
                related_entity_type=body.get("relatedEntityType"),
                related_entity_id=body.get("relatedEntityId"),
            )
    except CRMError as exc:
        return crm_error_response(exc, cors)
    status_code = 201 if message.get("status") == "sent" else 502
    return json_response({"item": message}, status_code=status_code, cors=cors)


@app.function_name(name="CrmSmsMessageDetail")
@app.route(route="crm/sms/{message_id}", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_sms_message_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return forbidden(cors)

    message_id = str(req.route_params.get("message_id") or "").strip()
    try:
        if req.method == "GET":
            message = sms_service.get_sms(actor.tenant_id, message_id)
            if not message:
                return error_response(cors=cors, status_code=404, message="sms message not found", code="not_found")
            return json_response({"item": message}, status_code=200, cors=cors)
        if str(body.get("action") or "").lower() != "retry":
            return error_response(cors=cors, status_code=400, message="action must be retry", code="validation_error")
        message = sms_service.retry_sms(actor.tenant_id, message_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": message}, status_code=200, cors=cors)


@app.function_name(name="CrmSmsTemplates")
@app.route(route="crm/sms-templates", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_sms_templates(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    try:
        if req.method == "GET":
            return json_response({"items": sms_service.list_templates(actor.tenant_id)}, status_code=200, cors=cors)
        if not can_manage_all(actor.role):
            return forbidden(cors, "Only admin/manager can create templates")
        template = sms_service.create_template(actor.tenant_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": template}, status_code=201, cors=cors)


@app.function_name(name="CrmSmsTemplateDetail")
@app.route(route="crm/sms-templates/{template_id}", methods=["GET", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_sms_template_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor

    template_id = str(req.route_params.get("template_id") or "").strip()
    try:
        if req.method == "GET":
            template = sms_service.get_template(actor.tenant_id, template_id)
            if not template:
                return error_response(cors=cors, status_code=404, message="sms template not found", code="not_found")
            return json_response({"item": template}, status_code=200, cors=cors)
        if not can_manage_settings(actor.role):
            return forbidden(cors, "Only admins can delete templates")
        sms_service.delete_template(actor.tenant_id, template_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"deleted": True}, status_code=200, cors=cors)
