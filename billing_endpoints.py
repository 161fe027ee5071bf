from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

import azure.functions as func
from sqlalchemy.exc import OperationalError

from function_app import app
from crm_shared import (
    CRMActor,
    crm_error_response,
    error_response,
    forbidden,
    get_limit,
    json_response,
    parse_body,
    parse_datetime_param,
    resolve_actor_or_error,
)
from shared.config import get_bool_setting
from shared.db import SessionLocal, Subscription
from shared.errors import CRMError
from services import billing_cycle_service, subscription_analytics_service as analytics, usage_service
from services.crm_rbac import can_manage_settings, normalize_role
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

ANALYTICS_KINDS = {"metrics", "trends", "churn", "forecast"}


def _tenant_filter(actor: CRMActor) -> Optional[str]:
    """Platform admins see every tenant; everyone else is scoped to their own."""
    return None if normalize_role(actor.role) == "admin" else actor.tenant_id


def _company_scope(db, actor: CRMActor, company_id: str) -> Tuple[Optional[str], bool]:
    """Return (company_id, allowed) after checking the company belongs to the actor's tenant."""
    company = str(company_id or "").strip() or None
    tenant = _tenant_filter(actor)
    if tenant is None:
        return company, True
    if not company:
        return None, False
    owned = (
        db.query(Subscription.id)
        .filter(Subscription.company_id == company, Subscription.tenant_id == tenant)
        .first()
    )
    return company, owned is not None


def _int_param(raw) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


def _period(req: func.HttpRequest) -> Tuple[datetime, datetime]:
    end = parse_datetime_param(req.params.get("end")) or datetime.utcnow()
    start = parse_datetime_param(req.params.get("start")) or end - timedelta(days=30)
    return start, end


@app.function_name(name="CrmBillingCycles")
@app.route(route="crm/billing/cycles", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_billing_cycles(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can view billing")

    db = SessionLocal()
    try:
        subscription_id = _int_param(req.params.get("subscriptionId"))
        if subscription_id is not None:
            cycles = billing_cycle_service.get_billing_cycles_for_subscription(db, subscription_id, _tenant_filter(actor))
        else:
            company_id, allowed = _company_scope(db, actor, req.params.get("companyId"))
            if not allowed or not company_id:
                return error_response(cors=cors, status_code=400, message="subscriptionId or companyId is required", code="validation_error")
            cycles = billing_cycle_service.get_upcoming_billing_cycles(
                db,
                company_id,
                get_limit(req, default=5),
                tenant_id=_tenant_filter(actor),
            )
        items = [billing_cycle_service.serialize_billing_cycle(cycle) for cycle in cycles]
    finally:
        db.close()
    return json_response({"items": items}, status_code=200, cors=cors)


@app.function_name(name="CrmBillingCycleDetail")
@app.route(route="crm/billing/cycles/{cycle_id}", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_billing_cycle_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage billing")

    cycle_id = _int_param(req.route_params.get("cycle_id"))
    if cycle_id is None:
        return error_response(cors=cors, status_code=400, message="invalid billing cycle id", code="validation_error")

    db = SessionLocal()
    try:
        if req.method == "GET":
            cycle = billing_cycle_service.get_billing_cycle(db, cycle_id, _tenant_filter(actor))
            if not cycle:
                return error_response(cors=cors, status_code=404, message="billing cycle not found", code="not_found")
            return json_response({"item": billing_cycle_service.serialize_billing_cycle(cycle)}, status_code=200, cors=cors)

        action = str(body.get("action") or "").strip().lower()
        if action == "retry":
            succeeded = billing_cycle_service.retry_billing_cycle(db, cycle_id, tenant_id=_tenant_filter(actor))
        elif action == "cancel":
            billing_cycle_service.cancel_billing_cycle(
                db,
                cycle_id,
                str(body.get("reason") or "Cancelled by administrator"),
                tenant_id=_tenant_filter(actor),
            )
            succeeded = True
        else:
            return error_response(cors=cors, status_code=400, message="action must be retry or cancel", code="validation_error")
        cycle = billing_cycle_service.get_billing_cycle(db, cycle_id)
        item = billing_cycle_service.serialize_billing_cycle(cycle) if cycle else None
    except CRMError as exc:
        return crm_error_response(exc, cors)
    finally:
        db.close()
    return json_response({"ok": succeeded, "item": item}, status_code=200, cors=cors)


@app.function_name(name="CrmSubscriptionCycles")
@app.route(
    route="crm/billing/subscriptions/{subscription_id}/cycles",
    methods=["GET", "POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def crm_subscription_cycles(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage billing")

    subscription_id = _int_param(req.route_params.get("subscription_id"))
    if subscription_id is None:
        return error_response(cors=cors, status_code=400, message="invalid subscription id", code="validation_error")

    db = SessionLocal()
    try:
        if req.method == "GET":
            if str(req.params.get("current") or "").lower() in {"1", "true", "yes"}:
                cycle = billing_cycle_service.get_current_billing_cycle(db, subscription_id, tenant_id=_tenant_filter(actor))
                item = billing_cycle_service.serialize_billing_cycle(cycle) if cycle else None
                return json_response({"item": item}, status_code=200, cors=cors)
            cycles = billing_cycle_service.get_billing_cycles_for_subscription(db, subscription_id, _tenant_filter(actor))
            items = [billing_cycle_service.serialize_billing_cycle(cycle) for cycle in cycles]
            return json_response({"items": items}, status_code=200, cors=cors)

        count = _int_param(body.get("count")) or 1
        cycles = billing_cycle_service.generate_billing_cycles(db, subscription_id, max(1, min(12, count)), _tenant_filter(actor))
        items = [billing_cycle_service.serialize_billing_cycle(cycle) for cycle in cycles]
    except CRMError as exc:
        return crm_error_response(exc, cors)
    finally:
        db.close()
    return json_response({"items": items}, status_code=201, cors=cors)


@app.function_name(name="CrmAnalytics")
@app.route(route="crm/analytics/{kind}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_analytics(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can view analytics")

    kind = str(req.route_params.get("kind") or "").strip().lower()
    if kind not in ANALYTICS_KINDS:
        return error_response(cors=cors, status_code=404, message="unknown analytics view", code="not_found")

    db = SessionLocal()
    try:
        company_id, allowed = _company_scope(db, actor, req.params.get("companyId"))
        if not allowed:
            return forbidden(cors, "companyId outside of your tenant")
        period = str(req.params.get("period") or "monthly").strip().lower()
        count = _int_param(req.params.get("periods")) or 6
        start, end = _period(req)
        if kind == "metrics":
            data = analytics.generate_subscription_metrics(db, start, end, company_id)
        elif kind == "trends":
            data = analytics.generate_subscription_trends(db, period, count, end, company_id)
        elif kind == "churn":
            data = analytics.generate_churn_analysis(db, start, end, company_id)
        else:
            data = analytics.generate_revenue_forecast(db, period, count, company_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    finally:
        db.close()
    return json_response({"item": data}, status_code=200, cors=cors)


@app.function_name(name="CrmAnalyticsReports")
@app.route(route="crm/analytics-reports", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_analytics_reports(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can generate reports")

    db = SessionLocal()
    try:
        company_id, allowed = _company_scope(db, actor, body.get("companyId"))
        if not allowed:
            return forbidden(cors, "companyId outside of your tenant")
        end = parse_datetime_param(body.get("periodEnd")) or datetime.utcnow()
        start = parse_datetime_param(body.get("periodStart")) or end - timedelta(days=30)
        report_id = analytics.generate_analytics_report(db, str(body.get("reportType") or "overview"), start, end, company_id)
        report = analytics.get_analytics_report(db, report_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    finally:
        db.close()
    return json_response({"item": report}, status_code=201, cors=cors)


@app.function_name(name="CrmAnalyticsReportDetail")
@app.route(route="crm/analytics-reports/{report_id}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_analytics_report_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can view reports")

    report_id = _int_param(req.route_params.get("report_id"))
    if report_id is None:
        return error_response(cors=cors, status_code=400, message="invalid report id", code="validation_error")
    db = SessionLocal()
    try:
        company_id, allowed = _company_scope(db, actor, req.params.get("companyId"))
        if not allowed:
            return forbidden(cors, "companyId outside of your tenant")
        report = analytics.get_analytics_report(db, report_id, company_id)
    except CRMError as exc:
        return crm_error_response(exc, cors)
    finally:
        db.close()
    return json_response({"item": report}, status_code=200, cors=cors)


@app.function_name(name="CrmUsage")
@app.route(route="crm/usage", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_usage(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    db = SessionLocal()
    try:
        company_id, allowed = _company_scope(db, actor, req.params.get("companyId") or body.get("companyId"))
        if not allowed or not company_id:
            return forbidden(cors, "companyId outside of your tenant")
        if req.method == "GET":
            resource_type = str(req.params.get("resourceType") or "").strip()
            if resource_type:
                history = usage_service.get_usage_history(
                    db,
                    company_id,
                    resource_type,
                    parse_datetime_param(req.params.get("start")),
                    parse_datetime_param(req.params.get("end")),
                    get_limit(req, default=100),
                )
                return json_response({"items": history}, status_code=200, cors=cors)
            summary = usage_service.get_usage_summary(db, company_id)
            return json_response({"item": summary}, status_code=200, cors=cors)

        within_limit = usage_service.track_usage(
            db,
            tenant_id=actor.tenant_id,
            company_id=company_id,
            resource_type=str(body.get("resourceType") or "").strip(),
            amount=float(body.get("amount") or 1),
            user_id=actor.user_id,
            metadata=body.get("metadata") if isinstance(body.get("metadata"), dict) else None,
        )
    except CRMError as exc:
        return crm_error_response(exc, cors)
    except ValueError:
        return error_response(cors=cors, status_code=400, message="amount must be a number", code="validation_error")
    finally:
        db.close()
    return json_response({"withinLimit": within_limit}, status_code=201, cors=cors)


@app.function_name(name="BillingCycleProcessor")
@app.timer_trigger(schedule="0 0 * * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def billing_cycle_processor(timer: func.TimerRequest) -> None:  # pylint: disable=unused-argument
    if get_bool_setting("DISABLE_BILLING_PROCESSOR"):
        logger.info("BillingCycleProcessor disabled by DISABLE_BILLING_PROCESSOR")
        return
    db = SessionLocal()
    try:
        processed = billing_cycle_service.process_pending_billing_cycles(db, count=50)
        logger.info("BillingCycleProcessor completed %s cycles", len(processed))
    except OperationalError as exc:
        db.rollback()
        logger.warning("BillingCycleProcessor DB error: %s", exc)
    finally:
        db.close()
