from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import TableServiceClient, UpdateMode

from shared.config import get_storage_connection_string
from shared.errors import ConflictError, TenantContextError

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]

# Tenant business data; a full backup covers exactly these.
TENANT_SCOPED_COLLECTIONS = [
    "leads",
    "customers",
    "activities",
    "notifications",
    "documents",
    "tasks",
    "deals",
    "users",
    "payments",
    "fileMetadata",
]

# Collections whose documents live under tenants/<tenant>/<collection>.
TENANT_OWNED_COLLECTIONS = TENANT_SCOPED_COLLECTIONS + [
    "tags",
    "tagApplications",
    "webhooks",
    "webhookEvents",
    "backups",
    "backupSchedules",
    "restoreJobs",
    "smsMessages",
    "smsTemplates",
    "leadAssignmentRules",
    "settings",
    "audit",
]


def _table_name(collection: str) -> str:
    """CRM_<COLLECTION>_TABLE overrides the default CRM<Collection> table name."""
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", collection).upper()
    default = "CRMAuditLog" if collection == "audit" else f"CRM{collection[0].upper()}{collection[1:]}"
    return os.getenv(f"CRM_{snake}_TABLE", default)


TABLES = {collection: _table_name(collection) for collection in TENANT_OWNED_COLLECTIONS}

_ROW_META = {"PartitionKey", "RowKey", "Timestamp", "etag"}

_service_client: Optional[TableServiceClient] = None
_table_clients: Dict[str, Any] = {}
_table_init_failed = False
_table_lock = Lock()

# table name -> tenant -> row key -> stored entity
_memory_lock = Lock()
_memory_store: Dict[str, Dict[str, Dict[str, dict]]] = {}

_id_lock = Lock()
_last_id_ms = 0
_id_sequence = 0


def tenant_partition(tenant_id: Any) -> str:
    return str(tenant_id or "").strip()


def require_tenant(tenant_id: Any) -> str:
    tenant = tenant_partition(tenant_id)
    if not tenant:
        raise TenantContextError("Tenant ID is required for tenant-scoped data")
    return tenant


def collection_path(collection: str, tenant_id: Any) -> str:
    """Return the logical path of a collection for a tenant."""
    if collection in TENANT_OWNED_COLLECTIONS:
        return f"tenants/{require_tenant(tenant_id)}/{collection}"
    return collection


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(_utc_now())


def new_id() -> str:
    """
    Time-ordered id: 13-digit epoch millis, underscore, 4 hex sequence, 8 random hex.
    Ids from one process sort strictly in creation order, also within a millisecond
    and across a clock step backwards.
    """
    global _last_id_ms, _id_sequence
    now_ms = int(_utc_now().timestamp() * 1000)
    with _id_lock:
        if now_ms > _last_id_ms:
            _last_id_ms, _id_sequence = now_ms, 0
        else:
            _id_sequence += 1
            if _id_sequence > 0xFFFF:
                _last_id_ms, _id_sequence = _last_id_ms + 1, 0
        ms, sequence = _last_id_ms, _id_sequence
    return f"{ms:013d}_{sequence:04x}{uuid4().hex[:8]}"


def parse_iso(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _partition_filter(tenant: str) -> str:
    return "PartitionKey eq '{}'".format(tenant.replace("'", "''"))


def _encode(document: Document) -> Document:
    """Flatten a document into table columns; lists and dicts go to <field>Json."""
    columns: Document = {}
    for key, value in document.items():
        if value is None or key == "id":
            continue
        if isinstance(value, (list, dict)):
            columns[f"{key}Json"] = json.dumps(value, ensure_ascii=True, separators=(",", ":"))
        else:
            columns[key] = value
    return columns


def _decode(entity: Document) -> Document:
    document: Document = {}
    for key, value in entity.items():
        if key in _ROW_META:
            continue
        if key.endswith("Json") and isinstance(value, str):
            try:
                document[key[:-4]] = json.loads(value)
            except json.JSONDecodeError:
                document[key[:-4]] = value
        else:
            document[key] = value
    document["id"] = entity.get("RowKey") or document.get("id")
    return document


def _get_service_client() -> Optional[TableServiceClient]:
    global _service_client, _table_init_failed
    if _table_init_failed or _service_client is not None:
        return _service_client
    conn_str = get_storage_connection_string()
    if not conn_str:
        return None
    try:
        _service_client = TableServiceClient.from_connection_string(conn_str)
    except Exception as exc:  # pylint: disable=broad-except
        _table_init_failed = True
        logger.warning("Azure Table service unavailable, CRM data stays in memory: %s", exc)
    return _service_client


def _table(collection: str):
    """Table client for a collection, or None when running on the memory backend."""
    table_name = TABLES[collection]
    if table_name in _table_clients:
        return _table_clients[table_name]
    service = _get_service_client()
    if service is None:
        return None
    with _table_lock:
        if table_name not in _table_clients:
            try:
                client = service.get_table_client(table_name)
                try:
                    client.create_table()
                except ResourceExistsError:
                    pass
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Could not open CRM table %s: %s", table_name, exc)
                return None
            _table_clients[table_name] = client
        return _table_clients[table_name]


def _bucket(collection: str, tenant: str) -> Dict[str, dict]:
    """Memory partition for one tenant; caller holds _memory_lock."""
    return _memory_store.setdefault(TABLES[collection], {}).setdefault(tenant, {})


def _write(collection: str, tenant: str, row_key: str, document: Document, *, create: bool) -> Document:
    """Create fails with ConflictError when the row key is taken; otherwise the row is replaced."""
    entity = {"PartitionKey": tenant, "RowKey": row_key, **_encode(document)}
    client = _table(collection)
    if client is not None:
        if create:
            try:
                client.create_entity(entity=entity)
            except ResourceExistsError as exc:
                raise ConflictError(f"{collection} document {row_key} already exists") from exc
        else:
            # Replace so that fields removed from the document are dropped from the row.
            client.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
    else:
        with _memory_lock:
            bucket = _bucket(collection, tenant)
            if create and row_key in bucket:
                raise ConflictError(f"{collection} document {row_key} already exists")
            bucket[row_key] = entity
    return _decode(entity)


def create_entity(table_key: str, tenant_id: str, payload: Document, entity_id: Optional[str] = None) -> Document:
    tenant = require_tenant(tenant_id)
    now = utc_now_iso()
    row_key = str(entity_id or payload.get("id") or new_id())
    document = {**payload, "createdAt": payload.get("createdAt") or now, "updatedAt": now}
    return _write(table_key, tenant, row_key, document, create=True)


def upsert_entity(table_key: str, tenant_id: str, entity_id: str, payload: Document) -> Document:
    """Write the full document, keeping its original createdAt."""
    tenant = require_tenant(tenant_id)
    existing = get_entity(table_key, tenant, entity_id) or {}
    now = utc_now_iso()
    document = {
        **payload,
        "createdAt": existing.get("createdAt") or payload.get("createdAt") or now,
        "updatedAt": now,
    }
    return _write(table_key, tenant, str(entity_id), document, create=False)


def patch_entity(table_key: str, tenant_id: str, entity_id: str, updates: Document) -> Optional[Document]:
    """Merge updates into an existing document; None values clear a field."""
    existing = get_entity(table_key, tenant_id, entity_id)
    if existing is None:
        return None
    merged = {key: value for key, value in {**existing, **updates}.items() if value is not None}
    return upsert_entity(table_key, tenant_id, entity_id, merged)


def get_entity(table_key: str, tenant_id: str, entity_id: str) -> Optional[Document]:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return None
    client = _table(table_key)
    if client is not None:
        try:
            return _decode(client.get_entity(partition_key=tenant, row_key=entity_id))
        except ResourceNotFoundError:
            return None
    with _memory_lock:
        entity = _memory_store.get(TABLES[table_key], {}).get(tenant, {}).get(entity_id)
    return _decode(entity) if entity else None


def delete_entity(table_key: str, tenant_id: str, entity_id: str) -> bool:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return False
    client = _table(table_key)
    if client is not None:
        try:
            client.delete_entity(partition_key=tenant, row_key=entity_id)
            return True
        except ResourceNotFoundError:
            return False
    with _memory_lock:
        return _memory_store.get(TABLES[table_key], {}).get(tenant, {}).pop(entity_id, None) is not None


def _partition_rows(table_key: str, tenant: str) -> List[Document]:
    client = _table(table_key)
    if client is not None:
        return [_decode(item) for item in client.query_entities(query_filter=_partition_filter(tenant))]
    with _memory_lock:
        entities = list(_memory_store.get(TABLES[table_key], {}).get(tenant, {}).values())
    return [_decode(item) for item in entities]


def _row_id(item: Document) -> str:
    return str(item.get("id") or "")


def list_entities(
    table_key: str,
    tenant_id: str,
    *,
    limit: int = 50,
    cursor: Optional[str] = None,
    filter_fn: Optional[Predicate] = None,
    descending: bool = False,
) -> Tuple[List[Document], Optional[str]]:
    """One page of a tenant partition ordered by id; the cursor is the last id returned."""
    tenant = tenant_partition(tenant_id)
    if not tenant:
        return [], None
    page_size = max(1, min(200, int(limit or 50)))
    rows = sorted(_partition_rows(table_key, tenant), key=_row_id, reverse=descending)
    if cursor:
        after = str(cursor)
        rows = [item for item in rows if (_row_id(item) < after if descending else _row_id(item) > after)]
    if filter_fn:
        rows = [item for item in rows if filter_fn(item)]
    page = rows[:page_size]
    next_cursor = page[-1]["id"] if page and len(rows) > page_size else None
    return page, next_cursor


def query_all(
    table_key: str,
    tenant_id: str,
    *,
    filter_fn: Optional[Predicate] = None,
    sort_key: Optional[Callable[[Document], Any]] = None,
    descending: bool = False,
) -> List[Document]:
    """Return every matching document of a tenant partition, unpaginated."""
    tenant = tenant_partition(tenant_id)
    if not tenant:
        return []
    rows = [item for item in _partition_rows(table_key, tenant) if filter_fn is None or filter_fn(item)]
    rows.sort(key=sort_key or _row_id, reverse=descending)
    return rows


def query_all_partitions(table_key: str, *, filter_fn: Optional[Predicate] = None) -> List[Document]:
    """Scan every tenant partition of a table. Only for system jobs such as timers."""
    client = _table(table_key)
    if client is not None:
        entities = list(client.list_entities())
    else:
        with _memory_lock:
            entities = [
                entity
                for bucket in _memory_store.get(TABLES[table_key], {}).values()
                for entity in bucket.values()
            ]
    rows = []
    for entity in entities:
        row = _decode(entity)
        row["tenantId"] = entity.get("PartitionKey") or row.get("tenantId")
        if filter_fn is None or filter_fn(row):
            rows.append(row)
    return sorted(rows, key=_row_id)


def get_entities(table_key: str, tenant_id: str, entity_ids: Iterable[str]) -> List[Document]:
    found = (get_entity(table_key, tenant_id, str(entity_id)) for entity_id in entity_ids)
    return [item for item in found if item is not None]


def delete_all(table_key: str, tenant_id: str) -> int:
    tenant = require_tenant(tenant_id)
    return sum(1 for item in query_all(table_key, tenant) if delete_entity(table_key, tenant, _row_id(item)))


def is_same_tenant(item: Document, tenant_id: str) -> bool:
    return str(item.get("PartitionKey") or item.get("tenantId") or "") == tenant_partition(tenant_id)


def write_audit_event(
    tenant_id: str,
    *,
    actor_email: str,
    actor_user_id: Optional[str],
    actor_role: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: Optional[dict] = None,
    after: Optional[dict] = None,
    meta: Optional[dict] = None,
) -> Document:
    payload = {
        "tenantId": tenant_partition(tenant_id),
        "actorEmail": actor_email,
        "actorUserId": actor_user_id,
        "actorRole": actor_role,
        "entityType": entity_type,
        "entityId": entity_id,
        "action": action,
        "before": before or None,
        "after": after or None,
        "meta": meta or None,
        "timestamp": utc_now_iso(),
    }
    return create_entity("audit", tenant_id, payload)


def list_audit_events(
    tenant_id: str,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
) -> List[Document]:
    def matches(item: Document) -> bool:
        if entity_type and str(item.get("entityType") or "").lower() != str(entity_type).lower():
            return False
        if entity_id and str(item.get("entityId") or "") != str(entity_id):
            return False
        return True

    rows, _ = list_entities("audit", tenant_id, limit=limit, filter_fn=matches, descending=True)
    return rows


def reset_memory_store_for_tests() -> None:
    with _memory_lock:
        _memory_store.clear()
