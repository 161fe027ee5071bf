"""
Outgoing webhooks: registration, verification, signed delivery with retries
and per-attempt event logs.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from shared.config import get_app_environment, get_webhook_settings
from shared.errors import InvalidStateError, NotFoundError
from services import crm_store, validation_service as v
from utils.secret_crypto import decrypt_secret, encrypt_secret, encryption_enabled

logger = logging.getLogger(__name__)

TABLE = "webhooks"
EVENTS_TABLE = "webhookEvents"

APP_VERSION = "1.0.0"
SECRET_LENGTH = 32
VERIFICATION_TTL_HOURS = 24

WEBHOOK_STATUSES = ["active", "inactive", "failed", "pending_verification"]
WEBHOOK_EVENT_TYPES = [
    "lead.created",
    "lead.updated",
    "lead.deleted",
    "lead.status_changed",
    "customer.created",
    "customer.updated",
    "customer.deleted",
    "deal.created",
    "deal.updated",
    "deal.deleted",
    "deal.stage_changed",
    "user.created",
    "user.updated",
    "user.deleted",
    "activity.created",
    "task.created",
    "task.updated",
    "task.completed",
    "subscription.created",
    "subscription.updated",
    "subscription.cancelled",
    "system.error",
    "backup.created",
    "export.completed",
    "import.completed",
]

WEBHOOK_SCHEMA: v.Schema = {
    "name": [v.required(), v.max_length(100)],
    "url": [v.required(), v.url(require_protocol=True)],
    "events": [
        v.required(),
        v.array(min_items=1),
        v.custom(
            lambda value, _data: all(event in WEBHOOK_EVENT_TYPES for event in value),
            message="Unknown webhook event type",
        ),
    ],
    "status": [v.one_of(WEBHOOK_STATUSES)],
    "description": [v.max_length(500)],
}

_transport_override: Optional[httpx.BaseTransport] = None


def set_transport_for_tests(transport: Optional[httpx.BaseTransport]) -> None:
    global _transport_override
    _transport_override = transport


def _http_client(timeout: float) -> httpx.Client:
    if _transport_override is not None:
        return httpx.Client(timeout=timeout, transport=_transport_override)
    return httpx.Client(timeout=timeout)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    return secrets.token_urlsafe(SECRET_LENGTH)[:SECRET_LENGTH]


def generate_verification_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


def serialize_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(str(secret).encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Check an ``X-Webhook-Signature`` header against the raw request body."""
    return hmac.compare_digest(sign_payload(body, secret), str(signature or ""))


def build_payload(event_type: str, data: Any, tenant_id: str) -> Dict[str, Any]:
    return {
        "eventType": event_type,
        "timestamp": int(time.time() * 1000),
        "data": data,
        "tenant": tenant_id,
        "environment": get_app_environment(),
        "version": APP_VERSION,
    }


def _headers(webhook: Dict[str, Any], payload: Dict[str, Any], body: bytes) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-ID": str(webhook["id"]),
        "X-Webhook-Event": payload["eventType"],
        "X-Webhook-Signature": sign_payload(body, decrypt_secret(webhook.get("secret") or "")),
        "X-Webhook-Timestamp": str(payload["timestamp"]),
    }
    custom_headers = webhook.get("headers")
    if isinstance(custom_headers, dict):
        headers.update({str(key): str(value) for key, value in custom_headers.items()})
    return headers


def _verification_fields() -> Dict[str, Any]:
    return {
        "status": "pending_verification",
        "isVerified": False,
        "verificationCode": generate_verification_code(),
        "verificationExpiry": crm_store.to_iso(_now() + timedelta(hours=VERIFICATION_TTL_HOURS)),
    }


def _send_verification_event(webhook: Dict[str, Any]) -> None:
    payload = build_payload(
        "system.error",
        {"message": "Webhook verification", "code": webhook.get("verificationCode")},
        webhook.get("tenantId") or "",
    )
    body = serialize_payload(payload)
    try:
        with _http_client(get_webhook_settings()["timeout_seconds"]) as client:
            client.post(webhook["url"], content=body, headers=_headers(webhook, payload, body))
    except httpx.HTTPError as exc:
        logger.warning("Error sending verification event to webhook %s: %s", webhook.get("id"), exc)


def create_webhook(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """Register a webhook. The returned document carries the plaintext secret; storage may hold it encrypted."""
    tenant = crm_store.require_tenant(tenant_id)
    secret = data.get("secret") or generate_secret()
    payload = {
        "name": data.get("name"),
        "url": data.get("url"),
        "events": list(data.get("events") or []),
        "headers": data.get("headers") or None,
        "description": data.get("description"),
        "version": data.get("version") or APP_VERSION,
        "secret": encrypt_secret(secret) if encryption_enabled() else secret,
        "tenantId": tenant,
        "createdBy": user_id,
        "failureCount": 0,
        "successCount": 0,
        **_verification_fields(),
    }
    v.ensure_valid(payload, WEBHOOK_SCHEMA, tenant)
    created = crm_store.create_entity(TABLE, tenant, payload)
    logger.info("Webhook %s registered for tenant %s", created["id"], tenant)
    _send_verification_event(created)
    return {**created, "secret": secret}


def get_webhook(tenant_id: str, webhook_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(TABLE, crm_store.require_tenant(tenant_id), webhook_id)


def _require_webhook(tenant_id: str, webhook_id: str) -> Dict[str, Any]:
    webhook = get_webhook(tenant_id, webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook with ID {webhook_id} not found")
    return webhook


def update_webhook(tenant_id: str, webhook_id: str, updates: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    current = _require_webhook(tenant, webhook_id)
    allowed = {"name", "url", "events", "headers", "description", "status", "version"}
    clean = {key: value for key, value in updates.items() if key in allowed}
    needs_verification = bool(clean.get("url")) and clean["url"] != current.get("url")
    merged = {**current, **clean, "updatedBy": user_id}
    if needs_verification:
        merged.update(_verification_fields())
    v.ensure_valid(merged, WEBHOOK_SCHEMA, tenant)
    updated = crm_store.upsert_entity(TABLE, tenant, webhook_id, merged)
    if needs_verification:
        _send_verification_event(updated)
    return updated


def delete_webhook(tenant_id: str, webhook_id: str) -> None:
    if not crm_store.delete_entity(TABLE, crm_store.require_tenant(tenant_id), webhook_id):
        raise NotFoundError(f"Webhook with ID {webhook_id} not found")


def list_webhooks(tenant_id: str, *, include_inactive: bool = True) -> List[Dict[str, Any]]:
    def matches(item: Dict[str, Any]) -> bool:
        return include_inactive or item.get("status") == "active"

    return crm_store.query_all(
        TABLE,
        crm_store.require_tenant(tenant_id),
        filter_fn=matches,
        sort_key=lambda item: (str(item.get("createdAt") or ""), str(item.get("id"))),
        descending=True,
    )


def get_webhooks_for_tenant(tenant_id: str, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Active webhooks of the tenant, optionally only those subscribed to ``event_type``."""
    webhooks = list_webhooks(tenant_id, include_inactive=False)
    if event_type:
        webhooks = [item for item in webhooks if event_type in (item.get("events") or [])]
    return webhooks


def verify_webhook(tenant_id: str, webhook_id: str, verification_code: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    webhook = _require_webhook(tenant, webhook_id)
    if not webhook.get("verificationCode") or str(webhook.get("verificationCode")) != str(verification_code):
        raise InvalidStateError("Invalid verification code", code="invalid_verification_code")
    expiry = crm_store.parse_iso(webhook.get("verificationExpiry"))
    if expiry is not None and expiry < _now():
        raise InvalidStateError("Verification code has expired", code="verification_expired")
    return crm_store.patch_entity(
        TABLE,
        tenant,
        webhook_id,
        {"status": "active", "isVerified": True, "verificationCode": None, "verificationExpiry": None},
    )


def reactivate_webhook(tenant_id: str, webhook_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    webhook = _require_webhook(tenant, webhook_id)
    if webhook.get("status") != "failed":
        return webhook
    logger.info("Reactivating webhook %s for tenant %s", webhook_id, tenant)
    return crm_store.patch_entity(TABLE, tenant, webhook_id, {"status": "active", "failureCount": 0})


def _record_success(tenant: str, webhook_id: str) -> None:
    webhook = crm_store.get_entity(TABLE, tenant, webhook_id)
    if webhook is None:
        return
    # The failure threshold counts consecutive failures, so a success starts over.
    crm_store.patch_entity(
        TABLE,
        tenant,
        webhook_id,
        {
            "successCount": int(webhook.get("successCount") or 0) + 1,
            "failureCount": 0,
            "lastSuccess": crm_store.utc_now_iso(),
        },
    )


def _record_failure(tenant: str, webhook_id: str, status_code: int, message: str, threshold: int) -> None:
    webhook = crm_store.get_entity(TABLE, tenant, webhook_id)
    if webhook is None:
        return
    failure_count = int(webhook.get("failureCount") or 0) + 1
    status = webhook.get("status")
    if failure_count >= threshold and status == "active":
        status = "failed"
        logger.warning("Webhook %s marked failed after %s consecutive failures", webhook_id, failure_count)
    crm_store.patch_entity(
        TABLE,
        tenant,
        webhook_id,
        {
            "failureCount": failure_count,
            "status": status,
            "lastFailure": {
                "timestamp": crm_store.utc_now_iso(),
                "statusCode": status_code,
                "message": message[:500],
            },
        },
    )


def _attempt(
    webhook: Dict[str, Any],
    payload: Dict[str, Any],
    attempt: int,
    timeout: float,
    threshold: int,
) -> Tuple[bool, Dict[str, Any]]:
    """One POST with its own event log; returns (delivered, log)."""
    tenant = str(webhook.get("tenantId") or payload["tenant"])
    log = crm_store.create_entity(
        EVENTS_TABLE,
        tenant,
        {
            "webhookId": webhook["id"],
            "eventType": payload["eventType"],
            "payload": payload,
            "attempt": attempt,
            "status": "pending",
            "tenantId": tenant,
        },
    )
    body = serialize_payload(payload)
    started = time.monotonic()
    try:
        with _http_client(timeout) as client:
            response = client.post(webhook["url"], content=body, headers=_headers(webhook, payload, body))
    except httpx.HTTPError as exc:
        message = str(exc) or exc.__class__.__name__
        logger.warning("Error delivering webhook %s: %s", webhook["id"], message)
        log = crm_store.patch_entity(
            EVENTS_TABLE, tenant, log["id"], {"status": "failed", "error": message, "processingTime": 0}
        )
        _record_failure(tenant, webhook["id"], 0, message, threshold)
        return False, log

    processing_ms = int((time.monotonic() - started) * 1000)
    if response.is_success:
        log = crm_store.patch_entity(
            EVENTS_TABLE,
            tenant,
            log["id"],
            {
                "status": "success",
                "statusCode": response.status_code,
                "response": response.text[:2000],
                "processingTime": processing_ms,
            },
        )
        _record_success(tenant, webhook["id"])
        return True, log

    message = f"Request failed with status {response.status_code}: {response.text[:500]}"
    log = crm_store.patch_entity(
        EVENTS_TABLE,
        tenant,
        log["id"],
        {"status": "failed", "statusCode": response.status_code, "error": message, "processingTime": processing_ms},
    )
    _record_failure(tenant, webhook["id"], response.status_code, message, threshold)
    return False, log


def _backoff(settings: Dict[str, Any], attempt: int) -> float:
    delay = float(settings["retry_delay_seconds"])
    return delay * (2 ** (attempt - 1)) if settings["exponential_backoff"] else delay


def _schedule_retry(tenant: str, log: Dict[str, Any], settings: Dict[str, Any], retries_left: int) -> None:
    attempt = int(log.get("attempt") or 1)
    retry_at = _now() + timedelta(seconds=_backoff(settings, attempt))
    crm_store.patch_entity(
        EVENTS_TABLE,
        tenant,
        log["id"],
        {"nextRetryAt": crm_store.to_iso(retry_at), "retriesLeft": retries_left},
    )


def deliver_webhook(webhook: Dict[str, Any], payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> bool:
    """
    Deliver one payload; returns True once an attempt succeeds.

    Failed attempts are retried inline with backoff. With ``defer_retries`` only one
    attempt is made and the retries are left to ``process_webhook_retries``.
    """
    settings = {**get_webhook_settings(), **(options or {})}
    max_retries = max(0, int(settings["max_retries"]))
    timeout = float(settings["timeout_seconds"])
    threshold = int(settings["failure_threshold"])

    if settings.get("defer_retries"):
        delivered, log = _attempt(webhook, payload, 1, timeout, threshold)
        if not delivered and max_retries:
            _schedule_retry(str(log.get("tenantId") or payload["tenant"]), log, settings, max_retries)
        return delivered

    for attempt in range(1, max_retries + 2):
        delivered, _ = _attempt(webhook, payload, attempt, timeout, threshold)
        if delivered:
            return True
        if attempt > max_retries:
            break
        time.sleep(_backoff(settings, attempt))
    return False


def trigger_event(tenant_id: str, event_type: str, data: Any, options: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    tenant = crm_store.require_tenant(tenant_id)
    webhooks = get_webhooks_for_tenant(tenant, event_type)
    if not webhooks:
        return {"delivered": 0, "failed": 0}
    payload = build_payload(event_type, data, tenant)
    delivered = 0
    for webhook in webhooks:
        if deliver_webhook(webhook, payload, options):
            delivered += 1
    return {"delivered": delivered, "failed": len(webhooks) - delivered}


def emit_event(tenant_id: str, event_type: str, data: Any) -> None:
    """
    Fire an event from a domain service. One short attempt per webhook runs inline;
    failures are retried later by the retry timer. Problems are logged, never raised.
    """
    options = {"timeout_seconds": get_webhook_settings()["inline_timeout_seconds"], "defer_retries": True}
    try:
        trigger_event(tenant_id, event_type, data, options)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Webhook event %s for tenant %s failed: %s", event_type, tenant_id, exc)


def _retry_due(item: Dict[str, Any], now: datetime) -> bool:
    retry_at = crm_store.parse_iso(item.get("nextRetryAt"))
    return item.get("status") == "failed" and retry_at is not None and retry_at <= now


def process_webhook_retries(now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
    """Re-send failed deliveries whose retry time has come. Runs from a timer across all tenants."""
    settings = get_webhook_settings()
    now = now or _now()
    due = crm_store.query_all_partitions(EVENTS_TABLE, filter_fn=lambda item: _retry_due(item, now))[: max(1, limit)]
    retried = delivered = 0
    for log in due:
        tenant = str(log["tenantId"])
        try:
            # Whatever happens next, this log's retry is consumed.
            crm_store.patch_entity(EVENTS_TABLE, tenant, log["id"], {"nextRetryAt": None})
            webhook = get_webhook(tenant, str(log.get("webhookId") or ""))
            if webhook is None or webhook.get("status") != "active":
                logger.info("Dropping retry of event %s: webhook %s is not active", log["id"], log.get("webhookId"))
                continue
            retried += 1
            ok, attempt_log = _attempt(
                webhook,
                log["payload"],
                int(log.get("attempt") or 1) + 1,
                float(settings["timeout_seconds"]),
                int(settings["failure_threshold"]),
            )
            if ok:
                delivered += 1
                continue
            retries_left = int(log.get("retriesLeft") or 0) - 1
            if retries_left > 0:
                _schedule_retry(tenant, attempt_log, settings, retries_left)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Webhook retry of event %s for tenant %s failed", log.get("id"), tenant)
    return {"retried": retried, "delivered": delivered}


def get_webhook_logs(
    tenant_id: str,
    webhook_id: str,
    limit: int = 50,
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    def matches(item: Dict[str, Any]) -> bool:
        if str(item.get("webhookId") or "") != str(webhook_id):
            return False
        return not status or item.get("status") == status

    rows = crm_store.query_all(EVENTS_TABLE, crm_store.require_tenant(tenant_id), filter_fn=matches, descending=True)
    return rows[: max(1, int(limit))]


def subscribed_event_types(webhooks: Iterable[Dict[str, Any]]) -> List[str]:
    seen: List[str] = []
    for webhook in webhooks:
        for event in webhook.get("events") or []:
            if event not in seen:
                seen.append(event)
    return seen
