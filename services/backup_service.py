"""
Tenant backups and restores.

A backup collects every document of the selected tenant collections into one
JSON archive ``{"metadata": ..., "collections": {name: [docs]}}`` stored in
blob storage. Backup records, schedules and restore jobs are themselves
documents in the tenant's partition and are validated through the collection
schema registry before they are written.
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import InvalidStateError, NotFoundError, ValidationFailedError
from services import backup_storage, crm_store, validation_service as v
from services.usage_service import add_months

logger = logging.getLogger(__name__)

BACKUPS_TABLE = "backups"
SCHEDULES_TABLE = "backupSchedules"
RESTORES_TABLE = "restoreJobs"

BACKUP_STATUSES = ["scheduled", "in_progress", "completed", "failed", "restoring", "restored", "restore_failed"]
BACKUP_SCOPES = ["full", "partial"]
BACKUP_FREQUENCIES = ["daily", "weekly", "monthly", "quarterly"]
SCHEDULE_HOUR = 2


def _known_collections(value: Any, _data: Dict[str, Any]) -> bool:
    return all(item in crm_store.TENANT_SCOPED_COLLECTIONS for item in value)


BACKUP_SCHEMA: v.Schema = {
    "tenantId": [v.required()],
    "name": [v.required(), v.max_length(100)],
    "description": [v.max_length(500)],
    "status": [v.required(), v.one_of(BACKUP_STATUSES)],
    "createdBy": [v.required()],
    "startedAt": [v.required()],
    "collections": [v.required(), v.array(min_items=1), v.custom(_known_collections, "Unknown collection")],
    "scope": [v.required(), v.one_of(BACKUP_SCOPES)],
    "isScheduled": [v.required()],
    "frequency": [v.one_of(BACKUP_FREQUENCIES)],
    "version": [v.required(), v.numeric()],
}

SCHEDULE_SCHEMA: v.Schema = {
    "tenantId": [v.required()],
    "name": [v.required(), v.max_length(100)],
    "description": [v.max_length(500)],
    "isActive": [v.required()],
    "frequency": [v.required(), v.one_of(BACKUP_FREQUENCIES)],
    "nextBackupAt": [v.required()],
    "collections": [v.required(), v.array(min_items=1), v.custom(_known_collections, "Unknown collection")],
    "scope": [v.required(), v.one_of(BACKUP_SCOPES)],
    "retentionPeriodDays": [v.required(), v.numeric(), v.min_value(1)],
    "createdBy": [v.required()],
}

RESTORE_SCHEMA: v.Schema = {
    "tenantId": [v.required()],
    "backupId": [v.required()],
    "status": [v.required(), v.one_of(BACKUP_STATUSES)],
    "startedAt": [v.required()],
    "requestedBy": [v.required()],
    "overwriteExisting": [v.required()],
    "collectionsToRestore": [v.required(), v.array(min_items=1)],
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_schemas(tenant: str) -> None:
    for collection, schema in (
        (BACKUPS_TABLE, BACKUP_SCHEMA),
        (SCHEDULES_TABLE, SCHEDULE_SCHEMA),
        (RESTORES_TABLE, RESTORE_SCHEMA),
    ):
        if v.get_schema(collection, tenant) is None:
            v.register_schema(collection, schema, tenant)


def _validated(collection: str, payload: Dict[str, Any], tenant: str) -> Dict[str, Any]:
    _ensure_schemas(tenant)
    result = v.validate_for_collection(collection, payload, tenant)
    if not result["isValid"]:
        raise ValidationFailedError(result["errors"])
    return payload


def calculate_next_backup_time(frequency: str, now: Optional[datetime] = None) -> datetime:
    base = (now or _now()).replace(hour=SCHEDULE_HOUR, minute=0, second=0, microsecond=0)
    if frequency == "daily":
        return base + timedelta(days=1)
    if frequency == "weekly":
        return base + timedelta(days=7)
    if frequency == "monthly":
        return add_months(base, 1)
    if frequency == "quarterly":
        return add_months(base, 3)
    raise ValidationFailedError(
        [{"field": "frequency", "message": f"Unsupported backup frequency {frequency}", "rule": "enum"}]
    )


def get_latest_backup_version(tenant_id: str) -> int:
    backups = crm_store.query_all(BACKUPS_TABLE, crm_store.require_tenant(tenant_id))
    return max((int(item.get("version") or 0) for item in backups), default=0)


def _resolve_collections(scope: str, collections: Optional[Iterable[str]]) -> List[str]:
    if scope == "full" or not collections:
        return list(crm_store.TENANT_SCOPED_COLLECTIONS)
    return [item for item in dict.fromkeys(collections)]


def create_backup(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Create a backup record and run it; the returned record is completed or failed."""
    tenant = crm_store.require_tenant(tenant_id)
    scope = data.get("scope") or "full"
    payload = {
        "tenantId": tenant,
        "name": data.get("name") or f"Backup {_now().date().isoformat()}",
        "description": data.get("description"),
        "status": "scheduled",
        "createdBy": user_id,
        "startedAt": crm_store.utc_now_iso(),
        "collections": _resolve_collections(scope, data.get("collections")),
        "scope": scope,
        "isScheduled": bool(data.get("isScheduled")),
        "frequency": data.get("frequency"),
        "version": get_latest_backup_version(tenant) + 1,
    }
    _validated(BACKUPS_TABLE, payload, tenant)
    record = crm_store.create_entity(BACKUPS_TABLE, tenant, {k: val for k, val in payload.items() if val is not None})
    logger.info("Backup %s (v%s) created for tenant %s", record["id"], record["version"], tenant)
    return process_backup(tenant, record["id"])


def process_backup(tenant_id: str, backup_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    backup = crm_store.patch_entity(BACKUPS_TABLE, tenant, backup_id, {"status": "in_progress"})
    if backup is None:
        raise NotFoundError(f"Backup with ID {backup_id} not found")
    try:
        archive: Dict[str, Any] = {
            "metadata": {
                "tenantId": tenant,
                "backupId": backup_id,
                "timestamp": crm_store.utc_now_iso(),
                "collections": backup["collections"],
                "version": backup["version"],
            },
            "collections": {},
        }
        documents_count = 0
        for collection in backup["collections"]:
            docs = crm_store.query_all(collection, tenant)
            archive["collections"][collection] = docs
            documents_count += len(docs)

        body = json.dumps(archive, indent=2, default=str).encode("utf-8")
        blob_name = backup_storage.backup_blob_name(tenant, int(backup["version"]), int(time.time() * 1000))
        size = backup_storage.upload_backup(blob_name, body)
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Error processing backup %s for tenant %s", backup_id, tenant)
        return crm_store.patch_entity(
            BACKUPS_TABLE,
            tenant,
            backup_id,
            {"status": "failed", "error": str(exc) or "Unknown error", "completedAt": crm_store.utc_now_iso()},
        )

    return crm_store.patch_entity(
        BACKUPS_TABLE,
        tenant,
        backup_id,
        {
            "status": "completed",
            "completedAt": crm_store.utc_now_iso(),
            "filePath": blob_name,
            "fileSize": size,
            "documentsCount": documents_count,
        },
    )


def get_backup(tenant_id: str, backup_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(BACKUPS_TABLE, crm_store.require_tenant(tenant_id), backup_id)


def get_backups_for_tenant(tenant_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    rows = crm_store.query_all(
        BACKUPS_TABLE,
        crm_store.require_tenant(tenant_id),
        sort_key=lambda item: (str(item.get("startedAt") or ""), str(item.get("id"))),
        descending=True,
    )
    return rows[: max(1, int(limit))]


def create_backup_schedule(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    scope = data.get("scope") or "full"
    frequency = data.get("frequency")
    payload = {
        "tenantId": tenant,
        "name": data.get("name"),
        "description": data.get("description"),
        "isActive": bool(data.get("isActive", True)),
        "frequency": frequency,
        "nextBackupAt": crm_store.to_iso(calculate_next_backup_time(frequency)) if frequency in BACKUP_FREQUENCIES else None,
        "collections": _resolve_collections(scope, data.get("collections")),
        "scope": scope,
        "retentionPeriodDays": data.get("retentionPeriodDays"),
        "createdBy": user_id,
    }
    _validated(SCHEDULES_TABLE, payload, tenant)
    payload["retentionPeriodDays"] = int(payload["retentionPeriodDays"])
    return crm_store.create_entity(SCHEDULES_TABLE, tenant, {k: val for k, val in payload.items() if val is not None})


def get_backup_schedules(tenant_id: str) -> List[Dict[str, Any]]:
    return crm_store.query_all(
        SCHEDULES_TABLE,
        crm_store.require_tenant(tenant_id),
        sort_key=lambda item: str(item.get("name") or "").lower(),
    )


def set_schedule_active(tenant_id: str, schedule_id: str, is_active: bool) -> Dict[str, Any]:
    updated = crm_store.patch_entity(SCHEDULES_TABLE, crm_store.require_tenant(tenant_id), schedule_id, {"isActive": bool(is_active)})
    if updated is None:
        raise NotFoundError(f"Backup schedule {schedule_id} not found")
    return updated


def delete_backup_schedule(tenant_id: str, schedule_id: str) -> None:
    if not crm_store.delete_entity(SCHEDULES_TABLE, crm_store.require_tenant(tenant_id), schedule_id):
        raise NotFoundError(f"Backup schedule {schedule_id} not found")


def cleanup_old_backups(tenant_id: str, retention_period_days: int, now: Optional[datetime] = None) -> int:
    tenant = crm_store.require_tenant(tenant_id)
    cutoff = (now or _now()) - timedelta(days=int(retention_period_days))

    def expired(item: Dict[str, Any]) -> bool:
        started = crm_store.parse_iso(item.get("startedAt"))
        return bool(item.get("isScheduled")) and started is not None and started < cutoff

    deleted = 0
    for backup in crm_store.query_all(BACKUPS_TABLE, tenant, filter_fn=expired):
        try:
            if backup.get("filePath"):
                backup_storage.delete_backup(backup["filePath"])
            crm_store.delete_entity(BACKUPS_TABLE, tenant, backup["id"])
            deleted += 1
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Error deleting backup %s for tenant %s: %s", backup["id"], tenant, exc)
    if deleted:
        logger.info("Deleted %s old backups for tenant %s", deleted, tenant)
    return deleted


def process_scheduled_backups(now: Optional[datetime] = None) -> List[str]:
    """Run every active schedule that is due; returns the ids of the backups created."""
    reference = now or _now()

    def due(item: Dict[str, Any]) -> bool:
        next_at = crm_store.parse_iso(item.get("nextBackupAt"))
        return bool(item.get("isActive")) and next_at is not None and next_at <= reference

    schedules = crm_store.query_all_partitions(SCHEDULES_TABLE, filter_fn=due)
    if not schedules:
        logger.info("No scheduled backups due")
        return []

    created: List[str] = []
    for schedule in schedules:
        tenant = schedule["tenantId"]
        try:
            backup = create_backup(
                tenant,
                {
                    "name": f"Scheduled: {schedule.get('name')}",
                    "description": f"Automated backup from schedule: {schedule.get('name')}",
                    "collections": schedule.get("collections"),
                    "scope": schedule.get("scope"),
                    "isScheduled": True,
                    "frequency": schedule.get("frequency"),
                },
                schedule.get("createdBy") or "system",
            )
            crm_store.patch_entity(
                SCHEDULES_TABLE,
                tenant,
                schedule["id"],
                {
                    "lastBackupAt": crm_store.utc_now_iso(),
                    "nextBackupAt": crm_store.to_iso(calculate_next_backup_time(schedule["frequency"], reference)),
                },
            )
            created.append(backup["id"])
            cleanup_old_backups(tenant, int(schedule.get("retentionPeriodDays") or 1), reference)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Error processing scheduled backup for %s: %s", schedule.get("id"), exc)
    return created


def restore_backup(tenant_id: str, backup_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    backup = get_backup(tenant, backup_id)
    if backup is None:
        raise NotFoundError(f"Backup with ID {backup_id} not found")
    if backup.get("status") != "completed":
        raise InvalidStateError("Cannot restore from a backup that is not in 'completed' status")

    payload = {
        "tenantId": tenant,
        "backupId": backup_id,
        "status": "scheduled",
        "startedAt": crm_store.utc_now_iso(),
        "requestedBy": user_id,
        "targetEnvironment": data.get("targetEnvironment"),
        "overwriteExisting": bool(data.get("overwriteExisting", False)),
        "collectionsToRestore": list(data.get("collections") or backup.get("collections") or []),
        "progress": 0,
    }
    _validated(RESTORES_TABLE, payload, tenant)
    job = crm_store.create_entity(RESTORES_TABLE, tenant, {k: val for k, val in payload.items() if val is not None})
    return process_restore(tenant, job["id"])


def _restore_collection(tenant: str, collection: str, documents: List[Dict[str, Any]], job: Dict[str, Any]) -> int:
    if job["overwriteExisting"]:
        crm_store.delete_all(collection, tenant)
    restored = 0
    for document in documents:
        doc_id = str(document.get("id") or "")
        if not doc_id:
            continue
        if not job["overwriteExisting"] and crm_store.get_entity(collection, tenant, doc_id) is not None:
            logger.info("Document %s in collection %s already exists, skipping", doc_id, collection)
            continue
        body = {key: value for key, value in document.items() if key != "id"}
        body["restoredFrom"] = {
            "backupId": job["backupId"],
            "restoreId": job["id"],
            "timestamp": crm_store.utc_now_iso(),
        }
        crm_store.upsert_entity(collection, tenant, doc_id, body)
        restored += 1
    return restored


def process_restore(tenant_id: str, restore_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    job = crm_store.patch_entity(RESTORES_TABLE, tenant, restore_id, {"status": "restoring"})
    if job is None:
        raise NotFoundError(f"Restore job with ID {restore_id} not found")
    try:
        backup = get_backup(tenant, job["backupId"])
        if backup is None:
            raise NotFoundError(f"Backup with ID {job['backupId']} not found")
        if not backup.get("filePath"):
            raise InvalidStateError(f"Backup file not found for backup {job['backupId']}")
        archive = json.loads(backup_storage.download_backup(backup["filePath"]).decode("utf-8"))
        stored = archive.get("collections") or {}

        targets = list(job["collectionsToRestore"])
        step = 100 / len(targets)
        progress = 0.0
        restored = 0
        for collection in targets:
            progress += step
            if collection not in stored or collection not in crm_store.TENANT_SCOPED_COLLECTIONS:
                logger.warning("Collection %s not found in backup %s, skipping", collection, job["backupId"])
                continue
            restored += _restore_collection(tenant, collection, stored[collection], job)
            crm_store.patch_entity(RESTORES_TABLE, tenant, restore_id, {"progress": int(progress)})
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Error processing restore %s for tenant %s", restore_id, tenant)
        return crm_store.patch_entity(
            RESTORES_TABLE,
            tenant,
            restore_id,
            {"status": "restore_failed", "error": str(exc), "completedAt": crm_store.utc_now_iso()},
        )

    return crm_store.patch_entity(
        RESTORES_TABLE,
        tenant,
        restore_id,
        {"status": "restored", "progress": 100, "documentsRestored": restored, "completedAt": crm_store.utc_now_iso()},
    )


def get_restore_jobs(tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    rows = crm_store.query_all(
        RESTORES_TABLE,
        crm_store.require_tenant(tenant_id),
        sort_key=lambda item: (str(item.get("startedAt") or ""), str(item.get("id"))),
        descending=True,
    )
    return rows[: max(1, int(limit))]
