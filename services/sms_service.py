from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from shared.config import get_twilio_settings
from shared.errors import InvalidStateError, NotFoundError
from services import crm_store, validation_service as v

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "smsMessages"
TEMPLATES_TABLE = "smsTemplates"

SMS_STATUSES = ["queued", "sent", "failed"]
MAX_BODY_LENGTH = 1600
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")

TEMPLATE_SCHEMA: v.Schema = {
    "name": [v.required(), v.max_length(100), v.unique(TEMPLATES_TABLE, ignore_case=True)],
    "body": [v.required(), v.max_length(MAX_BODY_LENGTH)],
}

_client_override: Optional[Any] = None


def set_client_for_tests(client: Optional[Any]) -> None:
    global _client_override
    _client_override = client


def get_twilio_client():
    """Instantiate a Twilio REST client from environment variables."""
    if _client_override is not None:
        return _client_override
    settings = get_twilio_settings()
    if not settings["account_sid"] or not settings["auth_token"]:
        raise InvalidStateError("Twilio credentials are not configured", code="sms_not_configured")
    return TwilioClient(settings["account_sid"], settings["auth_token"])


def normalize_phone(raw: Any) -> str:
    """
    Reduce a phone number to ``+digits``.

    Ten-digit numbers are assumed to be North American and get a ``+1`` prefix;
    numbers written with a leading ``00`` international prefix are rewritten.
    """
    text = str(raw or "").strip()
    digits = re.sub(r"\D", "", text)
    if not digits:
        return ""
    if text.startswith("+"):
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def render_template(body: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """Replace ``{{name}}`` placeholders; unknown names render as empty strings."""
    values = variables or {}

    def substitute(match: re.Match) -> str:
        current: Any = values
        for part in match.group(1).split("."):
            if not isinstance(current, dict):
                return ""
            current = current.get(part)
        return "" if current is None else str(current)

    return PLACEHOLDER_PATTERN.sub(substitute, body or "")


def _dispatch(tenant: str, message: Dict[str, Any]) -> Dict[str, Any]:
    settings = get_twilio_settings()
    attempts = int(message.get("attempts") or 0) + 1
    kwargs: Dict[str, Any] = {"to": message["to"], "body": message["body"]}
    if settings["messaging_service_sid"]:
        kwargs["messaging_service_sid"] = settings["messaging_service_sid"]
    else:
        kwargs["from_"] = message.get("from") or settings["from_number"]
    try:
        sent = get_twilio_client().messages.create(**kwargs)
    except (TwilioException, InvalidStateError) as exc:
        logger.warning("SMS %s to %s failed: %s", message["id"], message["to"], exc)
        return crm_store.patch_entity(
            MESSAGES_TABLE,
            tenant,
            message["id"],
            {"status": "failed", "attempts": attempts, "error": str(exc)},
        )
    logger.info("SMS %s sent to %s (sid=%s)", message["id"], message["to"], getattr(sent, "sid", None))
    return crm_store.patch_entity(
        MESSAGES_TABLE,
        tenant,
        message["id"],
        {
            "status": "sent",
            "attempts": attempts,
            "providerSid": getattr(sent, "sid", None),
            "sentAt": crm_store.utc_now_iso(),
            "error": None,
        },
    )


def send_sms(
    tenant_id: str,
    to: str,
    body: str,
    *,
    user_id: Optional[str] = None,
    related_entity_type: Optional[str] = None,
    related_entity_id: Optional[str] = None,
    template_id: Optional[str] = None,
) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    payload = {
        "to": normalize_phone(to),
        "body": body,
        "status": "queued",
        "attempts": 0,
        "createdBy": user_id,
        "relatedEntityType": related_entity_type,
        "relatedEntityId": related_entity_id,
        "templateId": template_id,
        "tenantId": tenant,
    }
    v.ensure_valid(
        payload,
        {"to": [v.required(), v.phone()], "body": [v.required(), v.max_length(MAX_BODY_LENGTH)]},
        tenant,
    )
    message = crm_store.create_entity(MESSAGES_TABLE, tenant, {k: val for k, val in payload.items() if val is not None})
    return _dispatch(tenant, message)


def retry_sms(tenant_id: str, message_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    message = crm_store.get_entity(MESSAGES_TABLE, tenant, message_id)
    if message is None:
        raise NotFoundError(f"SMS message {message_id} not found")
    if message.get("status") != "failed":
        raise InvalidStateError("Only failed messages can be retried")
    return _dispatch(tenant, message)


def get_sms(tenant_id: str, message_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(MESSAGES_TABLE, crm_store.require_tenant(tenant_id), message_id)


def list_sms(tenant_id: str, *, limit: int = 50, cursor: Optional[str] = None, status: Optional[str] = None):
    def matches(item: Dict[str, Any]) -> bool:
        return not status or item.get("status") == status

    return crm_store.list_entities(
        MESSAGES_TABLE,
        crm_store.require_tenant(tenant_id),
        limit=limit,
        cursor=cursor,
        filter_fn=matches,
        descending=True,
    )


def create_template(tenant_id: str, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    tenant = crm_store.require_tenant(tenant_id)
    payload = {
        "name": str(data.get("name") or "").strip(),
        "body": data.get("body"),
        "description": data.get("description"),
        "variables": sorted(set(PLACEHOLDER_PATTERN.findall(str(data.get("body") or "")))),
        "createdBy": user_id,
        "tenantId": tenant,
    }
    v.ensure_valid(payload, TEMPLATE_SCHEMA, tenant)
    return crm_store.create_entity(TEMPLATES_TABLE, tenant, payload)


def get_template(tenant_id: str, template_id: str) -> Optional[Dict[str, Any]]:
    return crm_store.get_entity(TEMPLATES_TABLE, crm_store.require_tenant(tenant_id), template_id)


def list_templates(tenant_id: str) -> List[Dict[str, Any]]:
    return crm_store.query_all(
        TEMPLATES_TABLE,
        crm_store.require_tenant(tenant_id),
        sort_key=lambda item: str(item.get("name") or "").lower(),
    )


def delete_template(tenant_id: str, template_id: str) -> None:
    if not crm_store.delete_entity(TEMPLATES_TABLE, crm_store.require_tenant(tenant_id), template_id):
        raise NotFoundError(f"SMS template {template_id} not found")


def send_templated_sms(
    tenant_id: str,
    template_id: str,
    to: str,
    variables: Optional[Dict[str, Any]] = None,
    *,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    template = get_template(tenant_id, template_id)
    if template is None:
        raise NotFoundError(f"SMS template {template_id} not found")
    return send_sms(
        tenant_id,
        to,
        render_template(template.get("body") or "", variables),
        user_id=user_id,
        template_id=template_id,
    )
