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
from services import tag_service
from services.crm_rbac import can_delete_records, can_manage_all, has_permission
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _truthy(value) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes"}


@app.function_name(name="CrmTags")
@app.route(route="crm/tags", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_tags(req: func.HttpRequest) -> func.HttpResponse:
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
            items = tag_service.get_tags(
                actor.tenant_id,
                entity_type=req.params.get("entityType") or None,
                include_system=req.params.get("includeSystem") is None or _truthy(req.params.get("includeSystem")),
                query=req.params.get("q") or None,
                sort_by=req.params.get("sortBy") or "name",
                sort_direction=req.params.get("sortDirection") or "asc",
                limit=get_limit(req, default=100),
            )
            return json_response({"items": items}, status_code=200, cors=cors)

        if not can_manage_all(actor.role):
            return forbidden(cors, "Only admin/manager can create tags")
        if _truthy(body.get("defaults")):
            created = tag_service.create_default_system_tags(actor.tenant_id, str(actor.user_id or actor.email))
            return json_response({"items": created}, status_code=201, cors=cors)
        tag = tag_service.create_tag(actor.tenant_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": tag}, status_code=201, cors=cors)


@app.function_name(name="CrmTagDetail")
@app.route(route="crm/tags/{tag_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_tag_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    tag_id = str(req.route_params.get("tag_id") or "").strip()
    try:
        if req.method == "GET":
            tag = tag_service.get_tag(actor.tenant_id, tag_id)
            if not tag:
                return error_response(cors=cors, status_code=404, message="tag not found", code="not_found")
            entities = tag_service.get_entities_by_tag(actor.tenant_id, tag_id, req.params.get("entityType") or None)
            return json_response({"item": tag, "entities": entities}, status_code=200, cors=cors)
        if req.method == "DELETE":
            if not can_delete_records(actor.role):
                return forbidden(cors, "Only admins can delete tags")
            tag_service.delete_tag(actor.tenant_id, tag_id)
            return json_response({"deleted": True}, status_code=200, cors=cors)
        if not can_manage_all(actor.role):
            return forbidden(cors, "Only admin/manager can edit tags")
        updated = tag_service.update_tag(actor.tenant_id, tag_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": updated}, status_code=200, cors=cors)


@app.function_name(name="CrmEntityTags")
@app.route(
    route="crm/tagged/{entity_type}/{entity_id}",
    methods=["GET", "POST", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_entity_tags(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    entity_type = str(req.route_params.get("entity_type") or "").strip()
    entity_id = str(req.route_params.get("entity_id") or "").strip()
    if entity_type not in tag_service.TAG_ENTITY_TYPES or entity_type == "all":
        return error_response(cors=cors, status_code=400, message="unsupported entity type", code="validation_error")

    try:
        if req.method == "GET":
            items = tag_service.get_tags_for_entity(actor.tenant_id, entity_type, entity_id)
            return json_response({"items": items}, status_code=200, cors=cors)

        if not has_permission(actor.role, "update:tenant") and not has_permission(actor.role, f"update:{entity_type}s"):
            return forbidden(cors)
        tag_id = str(body.get("tagId") or req.params.get("tagId") or "").strip()
        if not tag_id:
            return error_response(cors=cors, status_code=400, message="tagId is required", code="validation_error")
        user_id = str(actor.user_id or actor.email)
        if req.method == "POST":
            application = tag_service.apply_tag(actor.tenant_id, tag_id, entity_type, entity_id, user_id)
            return json_response({"item": application}, status_code=201, cors=cors)
        tag_service.remove_tag(actor.tenant_id, tag_id, entity_type, entity_id, user_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"removed": True}, status_code=200, cors=cors)
