"""Supabase persistence for tenant connection rows.

All kiwify writes go through :meth:`ConnectionStore.update_record`, which
issues exactly one ``update ... where user_id = ?`` statement.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..utils.db_helpers import db_call_with_retry, is_missing_column_error, is_missing_table_or_schema_error
from .records import (
    COLUMNS,
    INSTANCE_COLUMN,
    INSTANCES_TABLE,
    KIWIFY_TABLE,
    REVIEW_TABLE,
    SELECT_COLUMNS,
    SYSTEM_CONFIG_TABLE,
    ConnectionRecord,
    to_columns,
)

logger = logging.getLogger(__name__)

JOB_STATUS_KEYS = ("last_sync", "last_sync_error")

_JOB_STATUS_DESCRIPTIONS = {
    "last_sync": "Último resultado da sincronização de instâncias",
    "last_sync_error": "Último erro da sincronização de instâncias",
}

_MAX_REVIEW_CANDIDATES = 20

_PROVIDER_METADATA = (
    "remote_identifier",
    "profile_name",
    "profile_picture_url",
    "profile_status",
    "provider_instance_id",
    "provider_api_key",
    "provider_server_url",
    "provider_integration_data",
    "provider_raw_snapshot",
)


class ConnectionStore:
    def __init__(self, client: Any):
        self._db = client

    # ==================== KIWIFY ROWS ====================

    def list_bound_records(self) -> list[ConnectionRecord]:
        res = db_call_with_retry(
            "connection.list_bound_records",
            lambda: self._db.table(KIWIFY_TABLE).select(SELECT_COLUMNS).not_.is_(INSTANCE_COLUMN, "null").execute(),
        )
        records = [ConnectionRecord.from_row(row) for row in (res.data or [])]
        return [r for r in records if r.instance_name]

    def find_by_instance(self, instance_name: str) -> Optional[ConnectionRecord]:
        res = db_call_with_retry(
            "connection.find_by_instance",
            lambda: self._db.table(KIWIFY_TABLE).select(SELECT_COLUMNS).eq(INSTANCE_COLUMN, instance_name).limit(2).execute(),
        )
        rows = res.data or []
        if len(rows) > 1:
            logger.warning(f"Instance bound to more than one tenant row: {instance_name}")
        return ConnectionRecord.from_row(rows[0]) if rows else None

    def find_by_user(self, user_id: str) -> Optional[ConnectionRecord]:
        res = db_call_with_retry(
            "connection.find_by_user",
            lambda: self._db.table(KIWIFY_TABLE).select(SELECT_COLUMNS).eq(COLUMNS["user_id"], user_id).limit(1).execute(),
        )
        rows = res.data or []
        return ConnectionRecord.from_row(rows[0]) if rows else None

    def find_by_email(self, email: str) -> Optional[ConnectionRecord]:
        normalized = str(email or "").strip().lower()
        if not normalized:
            return None
        res = db_call_with_retry(
            "connection.find_by_email",
            lambda: self._db.table(KIWIFY_TABLE).select(SELECT_COLUMNS).eq(COLUMNS["email"], normalized).limit(1).execute(),
        )
        rows = res.data or []
        return ConnectionRecord.from_row(rows[0]) if rows else None

    def find_unbound_candidates(self) -> list[ConnectionRecord]:
        """Rows without an instance name, i.e. tenants still onboarding."""
        res = db_call_with_retry(
            "connection.find_unbound_candidates",
            lambda: self._db.table(KIWIFY_TABLE)
            .select(SELECT_COLUMNS)
            .is_(INSTANCE_COLUMN, "null")
            .limit(_MAX_REVIEW_CANDIDATES)
            .execute(),
        )
        return [ConnectionRecord.from_row(row) for row in (res.data or [])]

    def update_record(self, user_id: str, mutation: dict[str, Any]) -> None:
        payload = to_columns(mutation)
        if not payload:
            return
        try:
            db_call_with_retry(
                "connection.update_record",
                lambda: self._db.table(KIWIFY_TABLE).update(payload).eq(COLUMNS["user_id"], user_id).execute(),
            )
        except Exception as e:
            if is_missing_column_error(e):
                logger.error(
                    f"{KIWIFY_TABLE} is missing connection columns ({e}); run python -m affiliate_backend.setup_supabase"
                )
            raise

    def clear_instance(
        self,
        user_id: str,
        now: str,
        *,
        instance_name: Optional[str] = None,
        keep_metadata: bool = False,
    ) -> None:
        """Reset the tenant's connection fields, row kept.

        ``instance_name`` rebinds the row instead of unbinding it.
        ``keep_metadata`` leaves the provider profile and credentials in place.
        """
        mutation: dict[str, Any] = {
            "instance_name": instance_name,
            "is_connected": False,
            "connected_at": None,
            "disconnected_at": now,
            "last_sync_at": now,
        }
        if not keep_metadata:
            mutation.update({attr: None for attr in _PROVIDER_METADATA})
        self.update_record(user_id, mutation)

    # ==================== INSTANCE HISTORY ====================

    def upsert_instance(
        self,
        *,
        user_id: str,
        instance_name: str,
        phone_number: Optional[str],
        is_connected: bool,
        now: str,
    ) -> None:
        row: dict[str, Any] = {
            "user_id": user_id,
            "instance_name": instance_name,
            "is_connected": is_connected,
            "updated_at": now,
        }
        if phone_number:
            row["phone_number"] = phone_number
        try:
            existing = self.find_history(user_id, instance_name)
            # Transition timestamps move only when the state flips.
            if existing is None or bool(existing.get("is_connected")) != is_connected:
                if is_connected:
                    row["connected_at"] = now
                    row["disconnected_at"] = None
                else:
                    row["disconnected_at"] = now
            db_call_with_retry(
                "connection.upsert_instance",
                lambda: self._db.table(INSTANCES_TABLE).upsert(row, on_conflict="user_id,instance_name").execute(),
            )
        except Exception as e:
            # History mirror only; the kiwify row is authoritative.
            if is_missing_table_or_schema_error(e, INSTANCES_TABLE):
                logger.warning(f"Table {INSTANCES_TABLE} missing; skipping history upsert")
                return
            raise

    def find_history(self, user_id: str, instance_name: str) -> Optional[dict[str, Any]]:
        try:
            res = db_call_with_retry(
                "connection.find_history",
                lambda: self._db.table(INSTANCES_TABLE)
                .select("instance_name, phone_number, is_connected, connected_at, disconnected_at, updated_at")
                .eq("user_id", user_id)
                .eq("instance_name", instance_name)
                .limit(1)
                .execute(),
            )
        except Exception as e:
            if is_missing_table_or_schema_error(e, INSTANCES_TABLE):
                return None
            raise
        rows = res.data or []
        return rows[0] if rows else None

    def connection_counts(self) -> dict[str, int]:
        """Tenant totals for the sync dashboard."""
        res = db_call_with_retry(
            "connection.connection_counts",
            lambda: self._db.table(KIWIFY_TABLE)
            .select(f"{COLUMNS['user_id']}, {COLUMNS['is_connected']}, {COLUMNS['last_sync_at']}")
            .execute(),
        )
        rows = res.data or []
        return {
            "totalUsers": len(rows),
            "connectedInstances": sum(1 for r in rows if r.get(COLUMNS["is_connected"]) is True),
            "totalSynced": sum(1 for r in rows if r.get(COLUMNS["last_sync_at"])),
        }

    def latest_connected_instance(self, user_id: str) -> Optional[dict[str, Any]]:
        res = db_call_with_retry(
            "connection.latest_connected_instance",
            lambda: self._db.table(INSTANCES_TABLE)
            .select("instance_name, phone_number, is_connected, connected_at")
            .eq("user_id", user_id)
            .eq("is_connected", True)
            .order("connected_at", desc=True)
            .limit(1)
            .execute(),
        )
        rows = res.data or []
        return rows[0] if rows else None

    # ==================== REVIEW QUEUE ====================

    def enqueue_review(
        self,
        *,
        instance_name: str,
        event: dict[str, Any],
        candidates: list[ConnectionRecord],
        now: str,
    ) -> None:
        row = {
            "instance_name": instance_name,
            "event": event,
            "candidate_user_ids": [c.user_id for c in candidates],
            "candidate_count": len(candidates),
            "single_candidate": len(candidates) == 1,
            "status": "pending",
            "created_at": now,
        }
        db_call_with_retry(
            "connection.enqueue_review",
            lambda: self._db.table(REVIEW_TABLE).insert(row).execute(),
        )

    def list_review_queue(self, status: str = "pending", limit: int = 50) -> list[dict[str, Any]]:
        res = db_call_with_retry(
            "connection.list_review_queue",
            lambda: self._db.table(REVIEW_TABLE)
            .select("*")
            .eq("status", status)
            .order("created_at", desc=True)
            .limit(limit)
            .execute(),
        )
        return list(res.data or [])

    # ==================== SYSTEM CONFIGURATIONS ====================

    def load_configuration_rows(self, keys: tuple[str, ...]) -> list[dict[str, Any]]:
        try:
            res = db_call_with_retry(
                "connection.load_configuration_rows",
                lambda: self._db.table(SYSTEM_CONFIG_TABLE).select("key, value").in_("key", list(keys)).execute(),
            )
        except Exception as e:
            if is_missing_table_or_schema_error(e, SYSTEM_CONFIG_TABLE):
                logger.warning(f"Table {SYSTEM_CONFIG_TABLE} missing; using environment configuration")
                return []
            raise
        return list(res.data or [])

    def save_job_status(self, key: str, value: dict[str, Any]) -> None:
        if key not in JOB_STATUS_KEYS:
            raise ValueError(f"unknown job status key: {key}")
        row = {
            "key": key,
            "value": json.dumps(value, default=str),
            "description": _JOB_STATUS_DESCRIPTIONS[key],
        }
        db_call_with_retry(
            "connection.save_job_status",
            lambda: self._db.table(SYSTEM_CONFIG_TABLE).upsert(row, on_conflict="key").execute(),
        )

    def load_job_status(self) -> dict[str, Any]:
        res = db_call_with_retry(
            "connection.load_job_status",
            lambda: self._db.table(SYSTEM_CONFIG_TABLE).select("key, value").in_("key", list(JOB_STATUS_KEYS)).execute(),
        )
        out: dict[str, Any] = {k: None for k in JOB_STATUS_KEYS}
        for row in res.data or []:
            raw = row.get("value")
            if isinstance(raw, str):
                try:
                    raw = json.loads(raw)
                except ValueError:
                    pass
            out[str(row.get("key"))] = raw
        return out
