from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import azure.functions as func

from shared.config import get_bool_setting, get_setting

ORIGIN_SETTINGS = ("ALLOWED_ORIGINS", "CORS", "CORS_ORIGIN", "CORS_ALLOWED_ORIGINS")
CREDENTIAL_SETTINGS = ("CORS_ALLOW_CREDENTIALS", "CORS_CREDENTIALS", "CORSCredentials")
LOCALHOST_SETTINGS = ("CORS_ALLOW_LOCALHOST", "ALLOW_LOCALHOST_CORS")
CRM_HEADERS = ("Content-Type", "Authorization", "x-tenant-id", "x-user-id", "x-user-email")
EXPOSED_HEADERS = "X-Webhook-ID, X-Webhook-Event"
LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def _first_setting(names: Iterable[str]) -> Optional[str]:
    for name in names:
        value = get_setting(name)
        if value:
            return value
    return None


def _first_flag(names: Iterable[str], default: bool = False) -> bool:
    for name in names:
        if get_setting(name) is not None:
            return get_bool_setting(name, default)
    return default


def configured_origins() -> List[str]:
    """Comma-separated origins; a "*" entry anywhere means any origin."""
    entries = [entry.strip() for entry in (_first_setting(ORIGIN_SETTINGS) or "*").split(",")]
    entries = [entry for entry in entries if entry]
    return ["*"] if "*" in entries else entries


ALLOWED_ORIGINS = configured_origins()
ALLOW_CREDENTIALS = _first_flag(CREDENTIAL_SETTINGS)
ALLOW_LOCALHOST = _first_flag(LOCALHOST_SETTINGS, default=True)


def _split_origin(value: str) -> Tuple[Optional[str], str, Optional[int]]:
    raw = value.strip().rstrip("/").lower()
    if "://" not in raw:
        return None, raw.split(":", 1)[0], None
    parts = urlsplit(raw)
    return parts.scheme, parts.hostname or "", parts.port


def _origin_matches(origin: str, allowed: str) -> bool:
    """
    Compare a request origin with one configured entry.
    Entries may omit the scheme (any scheme) or use a leading "*." for subdomains.
    """
    if not origin or not allowed:
        return False
    scheme, host, port = _split_origin(origin)
    want_scheme, want_host, want_port = _split_origin(allowed)
    if want_scheme and want_scheme != scheme:
        return False
    if want_port is not None and want_port != port:
        return False
    if want_host.startswith("*."):
        return host.endswith(want_host[1:]) and host != want_host[2:]
    return host == want_host


def _is_local_origin(origin: Optional[str]) -> bool:
    return bool(origin) and _split_origin(origin)[1] in LOCAL_HOSTS


def _allow_headers(req: func.HttpRequest) -> str:
    """CRM headers plus anything the browser preflight asked for."""
    merged = {name.lower(): name for name in CRM_HEADERS}
    for name in req.headers.get("Access-Control-Request-Headers", "").split(","):
        if name.strip():
            merged.setdefault(name.strip().lower(), name.strip())
    return ", ".join(merged.values())


def _methods(allowed_methods: Iterable[str]) -> str:
    methods: List[str] = []
    for method in list(allowed_methods) + ["OPTIONS"]:
        normalized = method.strip().upper()
        if normalized and normalized not in methods:
            methods.append(normalized)
    return ", ".join(methods)


def build_cors_headers(req: func.HttpRequest, allowed_methods: Iterable[str]) -> Dict[str, str]:
    """Return CORS headers for the request origin if allowed."""
    origin = req.headers.get("origin") or req.headers.get("Origin")
    headers: Dict[str, str] = {"Vary": "Origin"}

    named = [entry for entry in ALLOWED_ORIGINS if entry != "*"]
    allow_all = not named or "*" in ALLOWED_ORIGINS or all(_is_local_origin(entry) for entry in named)
    permitted = allow_all or any(_origin_matches(origin or "", entry) for entry in named)
    if not permitted and not (ALLOW_LOCALHOST and _is_local_origin(origin)):
        return headers

    if ALLOW_CREDENTIALS and origin:
        allow_origin = origin
    else:
        allow_origin = "*" if allow_all else (origin or "*")
    headers.update(
        {
            "Access-Control-Allow-Origin": allow_origin,
            "Access-Control-Allow-Methods": _methods(allowed_methods),
            "Access-Control-Allow-Headers": _allow_headers(req),
            "Access-Control-Expose-Headers": EXPOSED_HEADERS,
        }
    )
    if ALLOW_CREDENTIALS:
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers
