"""Bulk reconciliation of provider instance state into tenant rows."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from ..evolution_api import EvolutionAPI
from ..whatsapp.errors import PartialUpsertError, WhatsAppError
from ..whatsapp.observability import LogContext, Observability
from ..whatsapp.retry import ProviderRetry
from .records import ConnectionRecord, ProviderInstanceSnapshot
from .status import apply_provider_status, utc_now_iso
from .store import ConnectionStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    total_instances: int = 0
    synced_count: int = 0
    failed_count: int = 0
    orphaned_count: int = 0
    processed_instances: list[str] = field(default_factory=list)
    failed_instances: list[dict[str, str]] = field(default_factory=list)
    orphaned_instances: list[str] = field(default_factory=list)
    automatic: bool = False
    source: str = "manual"

    @property
    def message(self) -> str:
        return f"Sincronizadas {self.synced_count} de {self.total_instances} instâncias"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReconciliationJob:
    """One pass: fetch every provider instance, fold matches into tenant rows.

    A provider failure aborts the pass (after the retry policy gives up); a
    failure writing one row is recorded and the batch continues.
    """

    def __init__(
        self,
        *,
        api: EvolutionAPI,
        store: ConnectionStore,
        retry: Optional[ProviderRetry] = None,
        obs: Optional[Observability] = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self._api = api
        self._store = store
        self._obs = obs or Observability(logger)
        self._retry = retry or ProviderRetry(obs=self._obs)
        self._clock = clock

    async def run(self, *, automatic: bool = False, source: str = "manual") -> dict[str, Any]:
        started = self._clock()
        ctx = LogContext(provider="evolution", correlation_id=f"sync:{started}")
        self._obs.info("evolution.sync.start", ctx=ctx, automatic=automatic, source=source)
        try:
            result = await self._reconcile(ctx, automatic=automatic, source=source)
        except Exception as e:
            timestamp = self._clock()
            if isinstance(e, WhatsAppError):
                self._obs.error("evolution.sync.aborted", ctx=ctx, code=e.code, error=str(e))
            else:
                self._obs.exception("evolution.sync.aborted", ctx=ctx, error=str(e))
            self._save_status("last_sync_error", {"timestamp": timestamp, "error": str(e), "source": source})
            return {"success": False, "error": str(e), "timestamp": timestamp}

        timestamp = self._clock()
        self._obs.info(
            "evolution.sync.done",
            ctx=ctx,
            total=result.total_instances,
            synced=result.synced_count,
            failed=result.failed_count,
            orphaned=result.orphaned_count,
        )
        self._save_status("last_sync", {"timestamp": timestamp, "result": result.to_dict(), "source": source})
        return {
            "success": True,
            "message": result.message,
            "result": result.to_dict(),
            "timestamp": timestamp,
        }

    async def _reconcile(self, ctx: LogContext, *, automatic: bool, source: str) -> SyncResult:
        snapshots = await self._retry.run("evolution.sync.fetch", self._api.list_all_instances, log_ctx=ctx)
        records = self._store.list_bound_records()

        by_name: dict[str, ConnectionRecord] = {}
        for record in records:
            if record.instance_name in by_name:
                self._obs.warning(
                    "evolution.sync.duplicate_binding",
                    ctx=ctx.child(user_id=record.user_id, instance_name=record.instance_name),
                )
                continue
            by_name[record.instance_name] = record

        result = SyncResult(total_instances=len(snapshots), automatic=automatic, source=source)
        for snapshot in snapshots:
            record = by_name.get(snapshot.instance_name)
            if record is None:
                result.orphaned_count += 1
                result.orphaned_instances.append(snapshot.instance_name)
                self._obs.info("evolution.sync.orphaned", ctx=ctx.child(instance_name=snapshot.instance_name))
                continue

            mutation = apply_provider_status(record, snapshot, self._clock())
            try:
                self._store.update_record(record.user_id, mutation)
            except Exception as e:
                err = PartialUpsertError(snapshot.instance_name, error=str(e))
                result.failed_count += 1
                result.failed_instances.append({"instance": snapshot.instance_name, "error": str(e)})
                self._obs.error(
                    "evolution.sync.record_failed",
                    ctx=ctx.child(user_id=record.user_id, instance_name=snapshot.instance_name),
                    code=err.code,
                    error=str(e),
                )
                continue
            result.synced_count += 1
            result.processed_instances.append(snapshot.instance_name)
            if mutation["is_connected"] != record.is_connected:
                self._mirror_history(ctx, record, snapshot, mutation)
        return result

    def _mirror_history(
        self,
        ctx: LogContext,
        record: ConnectionRecord,
        snapshot: ProviderInstanceSnapshot,
        mutation: dict[str, Any],
    ) -> None:
        try:
            self._store.upsert_instance(
                user_id=record.user_id,
                instance_name=snapshot.instance_name,
                phone_number=mutation.get("remote_identifier"),
                is_connected=mutation["is_connected"],
                now=mutation["last_sync_at"],
            )
        except Exception as e:
            self._obs.warning(
                "evolution.sync.history_failed",
                ctx=ctx.child(user_id=record.user_id, instance_name=snapshot.instance_name),
                error=str(e),
            )

    def _save_status(self, key: str, value: dict[str, Any]) -> None:
        try:
            self._store.save_job_status(key, value)
        except Exception as e:
            self._obs.error("evolution.sync.status_persist_failed", key=key, error=str(e))
