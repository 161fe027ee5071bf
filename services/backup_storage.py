from __future__ import annotations

import io
import logging
import threading
from typing import Dict, Optional

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from shared.config import get_backup_container, get_storage_connection_string

logger = logging.getLogger(__name__)

_BLOB_SERVICE: BlobServiceClient | None = None
_memory_blobs: Dict[str, bytes] = {}
_memory_lock = threading.Lock()


def _service() -> Optional[BlobServiceClient]:
    global _BLOB_SERVICE
    if _BLOB_SERVICE is None:
        conn = get_storage_connection_string()
        if not conn:
            return None
        _BLOB_SERVICE = BlobServiceClient.from_connection_string(conn)
    return _BLOB_SERVICE


def _container_client():
    service = _service()
    if service is None:
        return None
    client = service.get_container_client(get_backup_container())
    try:
        client.create_container()
    except ResourceExistsError:
        pass
    return client


def backup_blob_name(tenant_id: str, version: int, timestamp_ms: int) -> str:
    return f"backups/{tenant_id}/backup_{tenant_id}_v{version}_{timestamp_ms}.json"


def upload_backup(blob_name: str, data: bytes) -> int:
    """Store a backup archive and return its size in bytes."""
    container = _container_client()
    if container is None:
        with _memory_lock:
            _memory_blobs[blob_name] = bytes(data)
        return len(data)
    container.upload_blob(
        name=blob_name,
        data=io.BytesIO(data),
        overwrite=True,
        content_settings=ContentSettings(content_type="application/json"),
    )
    return len(data)


def download_backup(blob_name: str) -> bytes:
    service = _service()
    if service is None:
        with _memory_lock:
            if blob_name not in _memory_blobs:
                raise FileNotFoundError(blob_name)
            return _memory_blobs[blob_name]
    try:
        blob_client = service.get_blob_client(container=get_backup_container(), blob=blob_name)
        return blob_client.download_blob().readall()
    except ResourceNotFoundError as exc:
        raise FileNotFoundError(blob_name) from exc


def delete_backup(blob_name: str) -> None:
    service = _service()
    if service is None:
        with _memory_lock:
            _memory_blobs.pop(blob_name, None)
        return
    try:
        service.get_blob_client(container=get_backup_container(), blob=blob_name).delete_blob()
    except ResourceNotFoundError:
        logger.warning("Backup blob %s already deleted", blob_name)


def reset_memory_blobs_for_tests() -> None:
    global _BLOB_SERVICE
    with _memory_lock:
        _memory_blobs.clear()
    _BLOB_SERVICE = None
