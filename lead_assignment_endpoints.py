from __future__ import annotations

import logging

import azure.functions as func

from function_app import app
from crm_shared import (
    crm_error_response,
    error_response,
    forbidden,
    json_response,
    parse_body,
    resolve_actor_or_error,
)
from shared.config import get_bool_setting
from shared.errors import CRMError
from services import lead_assignment_service, lead_scoring_service
from services.crm_rbac import can_manage_all, can_manage_settings
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _actor_user_id(actor) -> str:
    return str(actor.user_id or actor.email)


@app.function_name(name="CrmLeadAssignmentRules")
@app.route(route="crm/lead-assignment/rules", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_assignment_rules(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return forbidden(cors, "Only admin/manager can manage lead assignment")

    try:
        if req.method == "GET":
            active_only = str(req.params.get("active") or "").lower() in {"1", "true", "yes"}
            items = lead_assignment_service.get_assignment_rules(actor.tenant_id, active_only=active_only)
            return json_response({"items": items}, status_code=200, cors=cors)
        created = lead_assignment_service.create_assignment_rule(actor.tenant_id, body, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": created}, status_code=201, cors=cors)


@app.function_name(name="CrmLeadAssignmentRuleDetail")
@app.route(
    route="crm/lead-assignment/rules/{rule_id}",
    methods=["GET", "PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_lead_assignment_rule_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return forbidden(cors, "Only admin/manager can manage lead assignment")

    rule_id = str(req.route_params.get("rule_id") or "").strip()
    try:
        if req.method == "GET":
            rule = lead_assignment_service.get_assignment_rule(actor.tenant_id, rule_id)
            if not rule:
                return error_response(cors=cors, status_code=404, message="rule not found", code="not_found")
            return json_response({"item": rule}, status_code=200, cors=cors)
        if req.method == "DELETE":
            rule = lead_assignment_service.delete_assignment_rule(actor.tenant_id, rule_id, _actor_user_id(actor))
        else:
            rule = lead_assignment_service.update_assignment_rule(actor.tenant_id, rule_id, body, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": rule}, status_code=200, cors=cors)


@app.function_name(name="CrmLeadAutoAssign")
@app.route(route="crm/lead-assignment/run", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_auto_assign(req: func.HttpRequest) -> func.HttpResponse:
    """Auto-assign one lead (``leadId`` in the body) or every unassigned lead."""
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return forbidden(cors, "Only admin/manager can run lead assignment")

    try:
        lead_id = str(body.get("leadId") or "").strip()
        if lead_id:
            results = [lead_assignment_service.auto_assign_lead(actor.tenant_id, lead_id, _actor_user_id(actor))]
        else:
            results = lead_assignment_service.auto_assign_all_leads(actor.tenant_id, _actor_user_id(actor))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    assigned = sum(1 for result in results if result["success"])
    return json_response({"results": results, "assigned": assigned}, status_code=200, cors=cors)


@app.function_name(name="CrmLeadAssignmentStats")
@app.route(route="crm/lead-assignment/stats", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_assignment_stats(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_all(actor.role):
        return forbidden(cors, "Only admin/manager can view assignment stats")
    try:
        stats = lead_assignment_service.get_assignment_stats(actor.tenant_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"items": stats}, status_code=200, cors=cors)


@app.function_name(name="CrmLeadScores")
@app.route(route="crm/lead-scores", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_scores(req: func.HttpRequest) -> func.HttpResponse:
    """GET ?quality=hot|warm|cold lists leads; POST rescores one lead or all of them."""
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
            quality = str(req.params.get("quality") or "").strip().lower()
            if not quality:
                return error_response(cors=cors, status_code=400, message="quality is required", code="validation_error")
            items = lead_scoring_service.get_leads_by_quality(actor.tenant_id, quality)
            return json_response({"items": items}, status_code=200, cors=cors)
        if not can_manage_all(actor.role):
            return forbidden(cors, "Only admin/manager can rescore leads")
        lead_id = str(body.get("leadId") or "").strip()
        if lead_id:
            score = lead_scoring_service.update_lead_score(actor.tenant_id, lead_id)
            return json_response({"leadId": lead_id, "score": score}, status_code=200, cors=cors)
        updated = lead_scoring_service.update_all_lead_scores(actor.tenant_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"updated": updated}, status_code=200, cors=cors)


@app.function_name(name="CrmLeadScoringCriteria")
@app.route(route="crm/lead-scoring/criteria", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_lead_scoring_criteria(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PUT", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    try:
        if req.method == "GET":
            criteria = lead_scoring_service.get_scoring_criteria(actor.tenant_id)
        elif not can_manage_settings(actor.role):
            return forbidden(cors, "Only admins can change lead scoring")
        else:
            criteria = lead_scoring_service.update_scoring_criteria(actor.tenant_id, body)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"criteria": criteria}, status_code=200, cors=cors)


@app.function_name(name="LeadScoreRefresh")
@app.timer_trigger(schedule="0 30 2 * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def lead_score_refresh(timer: func.TimerRequest) -> None:  # pylint: disable=unused-argument
    if get_bool_setting("DISABLE_LEAD_SCORE_REFRESH"):
        logger.info("LeadScoreRefresh disabled by DISABLE_LEAD_SCORE_REFRESH")
        return
    updated = lead_scoring_service.refresh_all_tenant_scores()
    logger.info("LeadScoreRefresh rescored %s leads across %s tenants", sum(updated.values()), len(updated))
