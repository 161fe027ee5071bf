import os
from typing import Optional

APP_ENVIRONMENTS = {"production", "staging", "development"}


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_int_setting(name: str, default: int) -> int:
    raw = str(os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_bool_setting(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "y"}:
        return True
    if lowered in {"0", "false", "no", "n"}:
        return False
    return default


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/crm.db"


def get_storage_connection_string() -> Optional[str]:
    return os.getenv("AZURE_STORAGE_CONNECTION_STRING") or None


def get_app_environment() -> str:
    """Deployment environment stamped on outgoing webhook payloads."""
    raw = str(os.getenv("APP_ENV") or os.getenv("ENVIRONMENT") or "development").strip().lower()
    return raw if raw in APP_ENVIRONMENTS else "development"


def get_webhook_settings() -> dict:
    """
    Delivery defaults for outgoing webhooks.
    Callers may override any of them per trigger.
    """
    return {
        "timeout_seconds": get_int_setting("WEBHOOK_TIMEOUT_SECONDS", 10),
        "inline_timeout_seconds": get_int_setting("WEBHOOK_INLINE_TIMEOUT_SECONDS", 3),
        "max_retries": get_int_setting("WEBHOOK_MAX_RETRIES", 3),
        "retry_delay_seconds": get_int_setting("WEBHOOK_RETRY_DELAY_SECONDS", 5),
        "exponential_backoff": get_bool_setting("WEBHOOK_EXPONENTIAL_BACKOFF", True),
        "failure_threshold": get_int_setting("WEBHOOK_FAILURE_THRESHOLD", 10),
    }


def get_backup_container() -> str:
    return os.getenv("CRM_BACKUP_CONTAINER", "crm-backups")


def get_twilio_settings() -> dict:
    """
    Twilio credentials for SMS notifications.
    Values are optional; the SMS service raises when a send is attempted without them.
    """
    return {
        "account_sid": os.getenv("TWILIO_ACCOUNT_SID"),
        "auth_token": os.getenv("TWILIO_AUTH_TOKEN"),
        "from_number": os.getenv("TWILIO_FROM_NUMBER") or os.getenv("TWILIO_PHONE_NUMBER"),
        "messaging_service_sid": os.getenv("TWILIO_MESSAGING_SERVICE_SID"),
    }
