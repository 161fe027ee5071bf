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
from shared.config import get_bool_setting
from shared.errors import CRMError
from services import backup_service
from services.crm_rbac import can_manage_settings
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


@app.function_name(name="CrmBackups")
@app.route(route="crm/backups", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_backups(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage backups")

    try:
        if req.method == "GET":
            items = backup_service.get_backups_for_tenant(actor.tenant_id, get_limit(req, default=50))
            return json_response({"items": items}, status_code=200, cors=cors)
        backup = backup_service.create_backup(actor.tenant_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": backup}, status_code=201, cors=cors)


@app.function_name(name="CrmBackupDetail")
@app.route(route="crm/backups/{backup_id}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_backup_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage backups")

    backup = backup_service.get_backup(actor.tenant_id, str(req.route_params.get("backup_id") or "").strip())
    if not backup:
        return error_response(cors=cors, status_code=404, message="backup not found", code="not_found")
    return json_response({"item": backup}, status_code=200, cors=cors)


@app.function_name(name="CrmBackupRestore")
@app.route(route="crm/backups/{backup_id}/restore", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_backup_restore(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can restore backups")

    backup_id = str(req.route_params.get("backup_id") or "").strip()
    try:
        job = backup_service.restore_backup(actor.tenant_id, backup_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": job}, status_code=201, cors=cors)


@app.function_name(name="CrmRestoreJobs")
@app.route(route="crm/restore-jobs", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_restore_jobs(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage backups")
    items = backup_service.get_restore_jobs(actor.tenant_id, get_limit(req, default=20))
    return json_response({"items": items}, status_code=200, cors=cors)


@app.function_name(name="CrmBackupSchedules")
@app.route(route="crm/backup-schedules", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_backup_schedules(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage backups")

    try:
        if req.method == "GET":
            return json_response({"items": backup_service.get_backup_schedules(actor.tenant_id)}, status_code=200, cors=cors)
        schedule = backup_service.create_backup_schedule(actor.tenant_id, body, str(actor.user_id or actor.email))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": schedule}, status_code=201, cors=cors)


@app.function_name(name="CrmBackupScheduleDetail")
@app.route(route="crm/backup-schedules/{schedule_id}", methods=["PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def crm_backup_schedule_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor
    if not can_manage_settings(actor.role):
        return forbidden(cors, "Only admins can manage backups")

    schedule_id = str(req.route_params.get("schedule_id") or "").strip()
    try:
        if req.method == "DELETE":
            backup_service.delete_backup_schedule(actor.tenant_id, schedule_id)
            return json_response({"deleted": True}, status_code=200, cors=cors)
        if "isActive" not in body:
            return error_response(cors=cors, status_code=400, message="isActive is required", code="validation_error")
        schedule = backup_service.set_schedule_active(actor.tenant_id, schedule_id, bool(body.get("isActive")))
    except CRMError as exc:
        return crm_error_response(exc, cors)
    return json_response({"item": schedule}, status_code=200, cors=cors)


@app.function_name(name="ScheduledBackupRunner")
@app.timer_trigger(schedule="0 0 * * * *", arg_name="timer", run_on_startup=False, use_monitor=True)
def scheduled_backup_runner(timer: func.TimerRequest) -> None:  # pylint: disable=unused-argument
    if get_bool_setting("DISABLE_BACKUP_SCHEDULER"):
        logger.info("ScheduledBackupRunner disabled by DISABLE_BACKUP_SCHEDULER")
        return
    created = backup_service.process_scheduled_backups()
    logger.info("ScheduledBackupRunner created %s backups", len(created))
