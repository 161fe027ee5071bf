import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.config import get_setting

SECRET_PREFIX = "enc1:"
KEY_SETTING = "CRM_SECRET_ENC_KEY"
NONCE_SIZE = 12


def _key() -> Optional[bytes]:
    """
    AES key from CRM_SECRET_ENC_KEY.
    A urlsafe-base64 value of 16/24/32 bytes is used as-is; anything else is hashed to 32 bytes.
    """
    raw = str(get_setting(KEY_SETTING) or "").strip()
    if not raw:
        return None
    try:
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
    except (ValueError, binascii.Error):
        decoded = b""
    if len(decoded) in (16, 24, 32):
        return decoded
    return hashlib.sha256(raw.encode("utf-8")).digest()


def encryption_enabled() -> bool:
    return _key() is not None


def is_encrypted(value: Optional[str]) -> bool:
    return str(value or "").startswith(SECRET_PREFIX)


def encrypt_secret(secret: str) -> str:
    key = _key()
    if key is None:
        raise ValueError(f"Missing required environment variable: {KEY_SETTING}")
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, str(secret).encode("utf-8"), None)
    return SECRET_PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("ascii").rstrip("=")


def decrypt_secret(value: str) -> str:
    """Plaintext of a stored secret; values without the prefix are returned unchanged."""
    if not is_encrypted(value):
        return str(value or "")
    key = _key()
    if key is None:
        raise ValueError(f"Missing required environment variable: {KEY_SETTING}")
    body = value[len(SECRET_PREFIX):]
    try:
        blob = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except (ValueError, binascii.Error) as exc:
        raise ValueError("Invalid secret encoding") from exc
    if len(blob) <= NONCE_SIZE:
        raise ValueError("Invalid secret payload")
    try:
        plain = AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as exc:
        raise ValueError("Secret could not be decrypted with the configured key") from exc
    return plain.decode("utf-8")
