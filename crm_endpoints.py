from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import azure.functions as func

from function_app import app
from crm_shared import (
    CRMActor,
    crm_error_response,
    error_response,
    forbidden,
    get_limit,
    json_response,
    parse_body,
    resolve_actor_or_error,
)
from shared.errors import CRMError
from services import customer_service, lead_service
from services.crm_rbac import can_delete_records, can_manage_all, can_view_record, can_write_entity
from services.crm_store import write_audit_event
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

ENTITY_OPS: Dict[str, Dict[str, Callable[..., Any]]] = {
    "customer": {
        "all": customer_service.get_customers,
        "get": customer_service.get_customer,
        "by_company": customer_service.get_customers_by_company,
        "by_assignee": customer_service.get_customers_by_assignee,
        "search": customer_service.search_customers,
        "create": customer_service.create_customer,
        "update": customer_service.update_customer,
        "delete": customer_service.delete_customer,
        "tags": customer_service.add_tags_to_customer,
        "assign": customer_service.assign_customer,
        "stats": customer_service.get_customer_statistics,
    },
    "lead": {
        "all": lead_service.get_leads,
        "get": lead_service.get_lead,
        "by_company": lead_service.get_leads_by_company,
        "by_assignee": lead_service.get_leads_by_assignee,
        "search": lead_service.search_leads,
        "create": lead_service.create_lead,
        "update": lead_service.update_lead,
        "delete": lead_service.delete_lead,
        "tags": lead_service.add_tags_to_lead,
        "assign": lead_service.assign_lead,
        "stats": lead_service.get_lead_statistics,
    },
}


def _audit(actor: CRMActor, entity_type: str, entity_id: str, action: str, before=None, after=None) -> None:
    write_audit_event(
        actor.tenant_id,
        actor_email=actor.email,
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
    )


def _actor_user_id(actor: CRMActor) -> str:
    return str(actor.user_id or actor.email)


def _visible(actor: CRMActor, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [item for item in items if can_view_record(actor.role, actor.user_id, item)]


def _list_records(req: func.HttpRequest, actor: CRMActor, entity_type: str) -> List[Dict[str, Any]]:
    ops = ENTITY_OPS[entity_type]
    company_id = str(req.params.get("companyId") or "").strip()
    search = str(req.params.get("search") or req.params.get("q") or "").strip()
    assigned_to = str(req.params.get("assignedTo") or "").strip()
    status = str(req.params.get("status") or "").strip()

    if search and company_id:
        items = ops["search"](actor.tenant_id, search, company_id)
    elif assigned_to:
        items = ops["by_assignee"](actor.tenant_id, assigned_to, company_id or None)
    elif company_id:
        items = ops["by_company"](actor.tenant_id, company_id, status or None)
    else:
        items = ops["all"](actor.tenant_id)
    if status:
        items = [item for item in items if item.get("status") == status]
    return _visible(actor, items)[: get_limit(req, default=50)]


def _handle_collection(req: func.HttpRequest, entity_type: str) -> func.HttpResponse:
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
            return json_response({"items": _list_records(req, actor, entity_type)}, status_code=200, cors=cors)

        if not can_write_entity(actor.role, entity_type):
            return forbidden(cors, f"{entity_type.title()} creation is not permitted")
        created = ENTITY_OPS[entity_type]["create"](actor.tenant_id, body, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    _audit(actor, entity_type, str(created["id"]), f"{entity_type}_created", after=created)
    return json_response({"item": created}, status_code=201, cors=cors)


def _handle_detail(req: func.HttpRequest, entity_type: str, id_param: str) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    ops = ENTITY_OPS[entity_type]
    record_id = str(req.route_params.get(id_param) or "").strip()
    if not record_id:
        return error_response(cors=cors, status_code=400, message=f"{entity_type} id is required", code="validation_error")
    before = ops["get"](actor.tenant_id, record_id)
    if not before:
        return error_response(cors=cors, status_code=404, message=f"{entity_type} not found", code="not_found")
    if not can_view_record(actor.role, actor.user_id, before):
        return forbidden(cors)

    if req.method == "GET":
        return json_response({"item": before}, status_code=200, cors=cors)

    try:
        if req.method == "DELETE":
            if not can_delete_records(actor.role):
                return forbidden(cors, f"Only admins can delete {entity_type}s")
            ops["delete"](actor.tenant_id, record_id)
            _audit(actor, entity_type, record_id, f"{entity_type}_deleted", before=before)
            return json_response({"deleted": True}, status_code=200, cors=cors)

        if not can_write_entity(actor.role, entity_type):
            return forbidden(cors)
        if entity_type == "lead" and "status" in body and len(body) == 1:
            after = lead_service.update_lead_status(actor.tenant_id, record_id, str(body["status"]), _actor_user_id(actor))
        else:
            after = ops["update"](actor.tenant_id, record_id, body, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    _audit(actor, entity_type, record_id, f"{entity_type}_updated", before=before, after=after)
    return json_response({"item": after}, status_code=200, cors=cors)


def _handle_action(req: func.HttpRequest, entity_type: str, id_param: str, action: str) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_write_entity(actor.role, entity_type):
        return forbidden(cors)

    record_id = str(req.route_params.get(id_param) or "").strip()
    ops = ENTITY_OPS[entity_type]
    try:
        if action == "tags":
            tags = body.get("tags")
            if not isinstance(tags, list):
                return error_response(cors=cors, status_code=400, message="tags must be a list", code="validation_error")
            after = ops["tags"](actor.tenant_id, record_id, [str(tag) for tag in tags], _actor_user_id(actor))
        else:
            if not can_manage_all(actor.role):
                return forbidden(cors, "Only admin/manager can assign records")
            assignee = str(body.get("assignedTo") or body.get("userId") or "").strip()
            if not assignee:
                return error_response(cors=cors, status_code=400, message="assignedTo is required", code="validation_error")
            after = ops["assign"](actor.tenant_id, record_id, assignee, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    _audit(actor, entity_type, record_id, f"{entity_type}_{action}", after=after)
    return json_response({"item": after}, status_code=200, cors=cors)


def _handle_stats(req: func.HttpRequest, entity_type: str) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    company_id: Optional[str] = str(req.params.get("companyId") or "").strip() or None
    try:
        stats = ENTITY_OPS[entity_type]["stats"](actor.tenant_id, company_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"stats": stats}, status_code=200, cors=cors)


@app.function_name(name="CrmCustomers")
@app.route(route="crm/customers", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customers(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_collection(req, "customer")


@app.function_name(name="CrmCustomerDetail")
@app.route(route="crm/customers/{customer_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_detail(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_detail(req, "customer", "customer_id")


@app.function_name(name="CrmCustomerTags")
@app.route(route="crm/customers/{customer_id}/tags", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_tags(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_action(req, "customer", "customer_id", "tags")


@app.function_name(name="CrmCustomerAssign")
@app.route(route="crm/customers/{customer_id}/assign", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_assign(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_action(req, "customer", "customer_id", "assign")


@app.function_name(name="CrmCustomerStats")
@app.route(route="crm/stats/customers", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_customer_stats(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_stats(req, "customer")


@app.function_name(name="CrmLeads")
@app.route(route="crm/leads", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_leads(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_collection(req, "lead")


@app.function_name(name="CrmLeadDetail")
@app.route(route="crm/leads/{lead_id}", methods=["GET", "PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_detail(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_detail(req, "lead", "lead_id")


@app.function_name(name="CrmLeadTags")
@app.route(route="crm/leads/{lead_id}/tags", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_tags(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_action(req, "lead", "lead_id", "tags")


@app.function_name(name="CrmLeadAssign")
@app.route(route="crm/leads/{lead_id}/assign", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_assign(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_action(req, "lead", "lead_id", "assign")


@app.function_name(name="CrmLeadStats")
@app.route(route="crm/stats/leads", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_stats(req: func.HttpRequest) -> func.HttpResponse:
    return _handle_stats(req, "lead")


@app.function_name(name="CrmLeadConvert")
@app.route(route="crm/leads/{lead_id}/convert", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_convert(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_write_entity(actor.role, "customer"):
        return forbidden(cors, "Customer creation is not permitted")

    lead_id = str(req.route_params.get("lead_id") or "").strip()
    customer_data = body.get("customer") if isinstance(body.get("customer"), dict) else None
    try:
        created = customer_service.convert_lead_to_customer(actor.tenant_id, lead_id, _actor_user_id(actor), customer_data)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    _audit(actor, "lead", lead_id, "lead_converted", after={"customerId": created["id"]})
    return json_response({"item": created}, status_code=201, cors=cors)
