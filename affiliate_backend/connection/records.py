"""Connection state types.

``ConnectionRecord`` mirrors the tenant's row in the ``kiwify`` table, whose
column names predate this module (hence the Portuguese instance column).
``ProviderInstanceSnapshot`` is what the Evolution API reports for one
instance; it is never persisted on its own.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

KIWIFY_TABLE = "kiwify"
INSTANCES_TABLE = "evolution_instances"
REVIEW_TABLE = "evolution_connection_review"
SYSTEM_CONFIG_TABLE = "system_configurations"

INSTANCE_COLUMN = "Nome da instancia da Evolution"

CONNECTED_STATES = frozenset({"open", "connected"})

# record attribute -> kiwify column
COLUMNS: dict[str, str] = {
    "user_id": "user_id",
    "email": "email",
    "instance_name": INSTANCE_COLUMN,
    "is_connected": "is_connected",
    "connected_at": "connected_at",
    "disconnected_at": "disconnected_at",
    "remote_identifier": "remojid",
    "profile_name": "evolution_profile_name",
    "profile_picture_url": "evolution_profile_picture_url",
    "profile_status": "evolution_profile_status",
    "provider_instance_id": "evolution_instance_id",
    "provider_api_key": "evolution_api_key",
    "provider_server_url": "evolution_server_url",
    "provider_integration_data": "evolution_integration_data",
    "provider_raw_snapshot": "evolution_raw_data",
    "last_event": "evolution_last_event",
    "last_sync_at": "evolution_last_sync",
}

SELECT_COLUMNS = ", ".join(f'"{c}"' if " " in c else c for c in COLUMNS.values())


@dataclass
class ConnectionRecord:
    user_id: str
    email: Optional[str] = None
    instance_name: Optional[str] = None
    is_connected: bool = False
    connected_at: Optional[str] = None
    disconnected_at: Optional[str] = None
    remote_identifier: Optional[str] = None
    profile_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    profile_status: Optional[str] = None
    provider_instance_id: Optional[str] = None
    provider_api_key: Optional[str] = None
    provider_server_url: Optional[str] = None
    provider_integration_data: Optional[Any] = None
    provider_raw_snapshot: Optional[Any] = None
    last_event: Optional[Any] = None
    last_sync_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConnectionRecord":
        values = {attr: row.get(column) for attr, column in COLUMNS.items()}
        values["user_id"] = str(values.get("user_id") or "")
        values["is_connected"] = bool(values.get("is_connected"))
        name = values.get("instance_name")
        values["instance_name"] = str(name).strip() if name and str(name).strip() else None
        return cls(**values)

    def to_status(self) -> dict[str, Any]:
        return {
            "isConnected": self.is_connected,
            "instanceName": self.instance_name,
            "phoneNumber": self.remote_identifier,
            "connectedAt": self.connected_at,
            "profileName": self.profile_name,
            "profilePictureUrl": self.profile_picture_url,
            "lastSyncAt": self.last_sync_at,
        }


def to_columns(mutation: dict[str, Any]) -> dict[str, Any]:
    """Translate a record-attribute mutation into kiwify column names."""
    return {COLUMNS[k]: v for k, v in mutation.items() if k in COLUMNS}


@dataclass(frozen=True)
class ProviderInstanceSnapshot:
    instance_name: str
    status: str = ""
    owner: Optional[str] = None
    profile_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    profile_status: Optional[str] = None
    server_url: Optional[str] = None
    apikey: Optional[str] = None
    instance_id: Optional[str] = None
    integration: Optional[Any] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return (self.status or "").lower() in CONNECTED_STATES

    @classmethod
    def from_provider(cls, item: dict[str, Any]) -> Optional["ProviderInstanceSnapshot"]:
        """Normalize one ``fetchInstances`` entry (Evolution v1 or v2 shape)."""
        if not isinstance(item, dict):
            return None
        inner = item.get("instance") if isinstance(item.get("instance"), dict) else item
        name = _first_str(inner, "instanceName", "name", "instance_name")
        if not name:
            return None
        status = (_first_str(inner, "status", "connectionStatus", "state") or "").lower()
        return cls(
            instance_name=name,
            status=status,
            owner=_first_str(inner, "owner", "ownerJid"),
            profile_name=_first_str(inner, "profileName"),
            profile_picture_url=_first_str(inner, "profilePictureUrl", "profilePictureURL", "profilePicUrl"),
            profile_status=_first_str(inner, "profileStatus") or (status or None),
            server_url=_first_str(inner, "serverUrl"),
            apikey=_first_str(inner, "apikey", "token") or _first_str(item, "hash"),
            instance_id=_first_str(inner, "instanceId", "id"),
            integration=inner.get("integration"),
            raw=item,
        )


@dataclass(frozen=True)
class ConnectionEvent:
    event: str
    instance_name: Optional[str]
    status: str = ""
    remote_jid: Optional[str] = None
    display_name: Optional[str] = None
    profile_pic_url: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_connection_update(self) -> bool:
        return self.event == "CONNECTION_UPDATE"

    @property
    def is_open(self) -> bool:
        return self.status in CONNECTED_STATES

    def to_snapshot(self) -> ProviderInstanceSnapshot:
        return ProviderInstanceSnapshot(
            instance_name=self.instance_name or "",
            status=self.status,
            owner=self.remote_jid,
            profile_name=self.display_name,
            profile_picture_url=self.profile_pic_url,
            profile_status=self.status or None,
            raw=self.raw,
        )


def _first_str(obj: Any, *keys: str) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
