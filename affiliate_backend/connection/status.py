"""Provider status -> tenant row mutation.

Every writer (reconciliation, webhook, mark-connected) builds its update
through :func:`apply_provider_status`, so the three paths cannot drift apart.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

from ..utils.phone_utils import extract_phone_from_jid
from .records import ConnectionRecord, ProviderInstanceSnapshot


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def apply_provider_status(
    record: ConnectionRecord,
    snapshot: ProviderInstanceSnapshot,
    now: Union[datetime, str],
    *,
    last_event: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Return the record-attribute mutation for one snapshot.

    The result always carries ``is_connected`` together with both timestamps,
    so persisting it in one statement keeps them consistent. Applying the same
    snapshot twice yields the same mutation apart from ``last_sync_at``.
    """
    stamp = now.isoformat() if isinstance(now, datetime) else str(now)
    connected = snapshot.is_open

    if connected and not record.is_connected:
        connected_at: Optional[str] = stamp
        disconnected_at: Optional[str] = None
    elif not connected and record.is_connected:
        connected_at = None
        disconnected_at = stamp
    elif connected:
        connected_at = record.connected_at or stamp
        disconnected_at = None
    else:
        connected_at = None
        disconnected_at = record.disconnected_at or stamp

    mutation: dict[str, Any] = {
        "is_connected": connected,
        "connected_at": connected_at,
        "disconnected_at": disconnected_at,
        "last_sync_at": stamp,
    }

    remote = extract_phone_from_jid(snapshot.owner or "")
    metadata = {
        "remote_identifier": remote or None,
        "profile_name": snapshot.profile_name,
        "profile_picture_url": snapshot.profile_picture_url,
        "profile_status": snapshot.profile_status,
        "provider_instance_id": snapshot.instance_id,
        "provider_api_key": snapshot.apikey,
        "provider_server_url": snapshot.server_url,
        "provider_integration_data": snapshot.integration,
        "provider_raw_snapshot": snapshot.raw or None,
    }
    for attr, value in metadata.items():
        if value is not None:
            mutation[attr] = value

    if last_event is not None:
        mutation["last_event"] = last_event
    return mutation


def apply_to_record(record: ConnectionRecord, mutation: dict[str, Any]) -> ConnectionRecord:
    """In-memory view of ``record`` after ``mutation`` was persisted."""
    values = {**record.__dict__, **{k: v for k, v in mutation.items() if hasattr(record, k)}}
    return ConnectionRecord(**values)
