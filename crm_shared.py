from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func
from sqlalchemy import func as sa_func, or_

from shared.config import get_int_setting, get_setting
from shared.db import SessionLocal, Tenant, TenantUser
from shared.errors import CRMError
from services.crm_rbac import normalize_role

MAX_PAGE_SIZE = 100
SESSION_SECRET_SETTINGS = ("AUTH_SESSION_SECRET", "APP_SESSION_SECRET", "JWT_SECRET", "SECRET_KEY")
DEFAULT_SESSION_TTL = 12 * 60 * 60
MIN_SESSION_TTL = 15 * 60
MAX_SESSION_TTL = 7 * 24 * 60 * 60


@dataclass
class CRMActor:
    """Caller of a CRM endpoint, resolved from a signed session token."""

    tenant_id: str
    user_id: Optional[str]
    email: str
    role: str


def _normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unb64(text: str) -> Optional[bytes]:
    if not text:
        return None
    try:
        return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))
    except (ValueError, binascii.Error):
        return None


def _session_secret() -> bytes:
    for name in SESSION_SECRET_SETTINGS:
        value = str(get_setting(name) or "").strip()
        if value:
            return value.encode("utf-8")
    return b""


def _session_ttl() -> int:
    return max(MIN_SESSION_TTL, min(MAX_SESSION_TTL, get_int_setting("AUTH_SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL)))


def _sign(secret: bytes, payload: bytes) -> bytes:
    return hmac.new(secret, payload, hashlib.sha256).digest()


def _bearer_token(req: func.HttpRequest, body: Dict[str, Any]) -> str:
    """Authorization bearer header first, then ?auth_token=, then body authToken."""
    headers = req.headers or {}
    scheme, _, value = str(headers.get("Authorization") or headers.get("authorization") or "").strip().partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    for candidate in (req.params.get("auth_token"), body.get("authToken")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def _claimed_email(req: func.HttpRequest, body: Dict[str, Any]) -> str:
    headers = req.headers or {}
    for candidate in (headers.get("x-user-email"), req.params.get("email"), body.get("userEmail")):
        normalized = _normalize_email(candidate)
        if normalized:
            return normalized
    return ""


def issue_auth_session_token(
    email: str,
    *,
    tenant_id: Optional[str] = None,
    role: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Return (token, expiresAt ISO); (None, None) without an email or a configured secret."""
    normalized_email = _normalize_email(email)
    secret = _session_secret()
    if not normalized_email or not secret:
        return None, None
    lifetime = ttl_seconds if isinstance(ttl_seconds, int) and ttl_seconds > 0 else _session_ttl()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=lifetime)
    claims: Dict[str, Any] = {"email": normalized_email, "exp": int(expires_at.timestamp())}
    if tenant_id is not None:
        claims["tenant_id"] = str(tenant_id)
    if role:
        claims["role"] = normalize_role(role)
    payload = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return f"{_b64(payload)}.{_b64(_sign(secret, payload))}", expires_at.isoformat()


def verify_auth_session_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a well-signed, unexpired token carrying an email; otherwise None."""
    payload_part, _, sig_part = str(token or "").strip().partition(".")
    payload, signature = _unb64(payload_part), _unb64(sig_part)
    secret = _session_secret()
    if not payload or not signature or not secret:
        return None
    if not hmac.compare_digest(_sign(secret, payload), signature):
        return None
    try:
        claims = json.loads(payload.decode("utf-8"))
        expires = int(claims.get("exp") or 0)
    except (UnicodeDecodeError, ValueError, TypeError, AttributeError):
        return None
    if expires <= int(datetime.now(timezone.utc).timestamp()):
        return None
    claims["email"] = _normalize_email(claims.get("email"))
    return claims if claims["email"] else None


def _is_active(tenant: Optional[Tenant]) -> bool:
    return tenant is not None and str(tenant.status or "active").lower() == "active"


def _lookup_actor(db, email: str) -> Optional[CRMActor]:
    """Tenant users first; a tenant's primary email signs in as its tenantAdmin."""
    user = (
        db.query(TenantUser)
        .filter(sa_func.lower(sa_func.trim(TenantUser.email)) == email)
        .filter(or_(TenantUser.is_active.is_(True), TenantUser.is_active.is_(None)))
        .filter(sa_func.lower(sa_func.coalesce(TenantUser.status, "active")) != "disabled")
        .order_by(TenantUser.id.asc())
        .first()
    )
    if user is not None:
        tenant = db.query(Tenant).filter_by(id=user.tenant_id).one_or_none()
        if not _is_active(tenant):
            return None
        return CRMActor(tenant_id=str(tenant.id), user_id=str(user.id), email=email, role=normalize_role(user.role))

    owner_of = (
        db.query(Tenant)
        .filter(sa_func.lower(sa_func.trim(Tenant.email)) == email)
        .order_by(Tenant.id.asc())
        .first()
    )
    if not _is_active(owner_of):
        return None
    return CRMActor(tenant_id=str(owner_of.id), user_id=f"owner:{owner_of.id}", email=email, role="tenantAdmin")


def resolve_actor_from_session(req: func.HttpRequest, body: Optional[dict] = None) -> Optional[CRMActor]:
    body = body or {}
    claims = verify_auth_session_token(_bearer_token(req, body))
    if not claims:
        return None
    claimed = _claimed_email(req, body)
    if claimed and claimed != claims["email"]:
        return None

    db = SessionLocal()
    try:
        actor = _lookup_actor(db, claims["email"])
    finally:
        db.close()
    if actor is None:
        return None
    claim_tenant = claims.get("tenant_id")
    if claim_tenant is not None and str(claim_tenant) != actor.tenant_id:
        return None
    return actor


def json_response(data: Any, *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def crm_error_response(exc: CRMError, cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(
        cors=cors,
        status_code=exc.status_code,
        message=exc.message,
        code=exc.code,
        details=exc.details,
    )


def parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def get_limit(req: func.HttpRequest, default: int = 50) -> int:
    raw = req.params.get("limit")
    try:
        parsed = int(raw) if raw else default
    except ValueError:
        parsed = default
    return max(1, min(MAX_PAGE_SIZE, parsed))


def parse_datetime_param(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def resolve_actor_or_error(
    req: func.HttpRequest,
    body: Dict[str, Any],
    cors: Dict[str, str],
) -> Tuple[Optional[CRMActor], Optional[func.HttpResponse]]:
    actor = resolve_actor_from_session(req, body)
    if not actor:
        return None, error_response(
            cors=cors,
            status_code=401,
            message="CRM authentication required",
            code="auth_required",
        )
    return actor, None


def forbidden(cors: Dict[str, str], message: str = "Not permitted for this role") -> func.HttpResponse:
    return error_response(cors=cors, status_code=403, message=message, code="forbidden")
