"""Keeps one session's view of the tenant connection status current.

Three channels feed it: the Supabase realtime feed for the tenant's
``kiwify`` row, a debounced re-check when the session becomes visible, and
a periodic re-check. ``stop()`` tears all three down together.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from ..whatsapp.config import ConnectionRules
from ..whatsapp.observability import LogContext, Observability
from .records import KIWIFY_TABLE, ConnectionRecord
from .store import ConnectionStore
from .wizard import Notice

logger = logging.getLogger(__name__)

StatusFetcher = Callable[[], Awaitable[Optional[dict[str, Any]]]]


class SupabaseRealtimeFeed:
    """Postgres-changes channel on ``kiwify`` scoped to one ``user_id``."""

    def __init__(self, client: Any, *, schema: str = "public"):
        self._client = client
        self._schema = schema

    async def subscribe(self, user_id: str, callback: Callable[[dict[str, Any]], None]) -> Any:
        channel = self._client.channel(f"evolution-status-{user_id}")
        channel.on_postgres_changes(
            "*",
            callback=callback,
            table=KIWIFY_TABLE,
            schema=self._schema,
            filter=f"user_id=eq.{user_id}",
        )
        await channel.subscribe()
        return channel

    async def unsubscribe(self, channel: Any) -> None:
        await self._client.remove_channel(channel)


def store_status_fetcher(store: ConnectionStore, user_id: str) -> StatusFetcher:
    async def fetch() -> Optional[dict[str, Any]]:
        record = store.find_by_user(user_id)
        if record is None or not record.is_connected:
            return None
        return record.to_status()

    return fetch


def parse_change(payload: Any) -> tuple[str, dict[str, Any]]:
    """Return ``(event_type, new_row)`` from a realtime callback payload."""
    if not isinstance(payload, dict):
        return "", {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    event_type = str(data.get("type") or data.get("eventType") or payload.get("eventType") or "").upper()
    row = data.get("record") or data.get("new") or payload.get("new") or {}
    return event_type, row if isinstance(row, dict) else {}


class ConnectionStatusSubscriber:
    def __init__(
        self,
        user_id: str,
        *,
        fetch_status: StatusFetcher,
        feed: Optional[SupabaseRealtimeFeed] = None,
        rules: Optional[ConnectionRules] = None,
        on_status: Optional[Callable[[Optional[dict[str, Any]]], None]] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.user_id = user_id
        self.status: Optional[dict[str, Any]] = None
        self._fetch_status = fetch_status
        self._feed = feed
        self._rules = rules or ConnectionRules()
        self._on_status = on_status
        self._on_notice = on_notice
        self._clock = clock
        self._sleep = sleep
        self._obs = Observability(logger)
        self._ctx = LogContext(user_id=user_id, provider="evolution")

        self._channel: Any = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._visibility_task: Optional[asyncio.Task] = None
        self._guard_until = 0.0
        self._started = False

    @property
    def connected(self) -> bool:
        return bool(self.status and self.status.get("isConnected"))

    @property
    def suppressed(self) -> bool:
        return self._clock() < self._guard_until

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.refresh()
        if self._rules.realtime_enabled and self._feed is not None:
            try:
                self._channel = await self._feed.subscribe(self.user_id, self.handle_change)
            except Exception as e:
                self._obs.warning("evolution.subscriber.realtime_failed", ctx=self._ctx, error=str(e))
                self._notify(Notice("warning", "Tempo real indisponível", "Atualizações automáticas desativadas."))
        if self._rules.periodic_check_enabled and self._rules.periodic_check_interval_s > 0:
            self._periodic_task = asyncio.create_task(self._periodic_loop())

    async def stop(self) -> None:
        self._started = False
        tasks = [t for t in (self._periodic_task, self._visibility_task) if t is not None]
        self._periodic_task = None
        self._visibility_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        channel, self._channel = self._channel, None
        if channel is not None and self._feed is not None:
            try:
                await self._feed.unsubscribe(channel)
            except Exception as e:
                self._obs.warning("evolution.subscriber.unsubscribe_failed", ctx=self._ctx, error=str(e))

    async def refresh(self) -> None:
        if self.suppressed:
            return
        try:
            status = await self._fetch_status()
        except Exception as e:
            self._obs.warning("evolution.subscriber.fetch_failed", ctx=self._ctx, error=str(e))
            self._notify(Notice("warning", "Falha ao verificar conexão", "Não foi possível verificar o status do WhatsApp."))
            return
        if self.suppressed:
            return
        self._set_status(status)

    def handle_change(self, payload: Any) -> None:
        if self.suppressed:
            self._obs.info("evolution.subscriber.change_suppressed", ctx=self._ctx)
            return
        event_type, row = parse_change(payload)
        if event_type in {"INSERT", "UPDATE"} and row.get("is_connected"):
            record = ConnectionRecord.from_row({"user_id": self.user_id, **row})
            self._set_status(record.to_status())
        elif event_type:
            self._set_status(None)

    def notify_visible(self) -> None:
        if not self._started or not self._rules.visibility_check_enabled:
            return
        if self._visibility_task is not None and not self._visibility_task.done():
            self._visibility_task.cancel()
        self._visibility_task = asyncio.create_task(self._visibility_check())

    def begin_manual_disconnect(self) -> None:
        if self._rules.manual_disconnect_protection:
            self._guard_until = self._clock() + self._rules.manual_disconnect_guard_s
        self._set_status(None, force=True)

    async def _visibility_check(self) -> None:
        await self._sleep(self._rules.visibility_debounce_s)
        await self.refresh()

    async def _periodic_loop(self) -> None:
        while True:
            await self._sleep(self._rules.periodic_check_interval_s)
            await self.refresh()

    def _set_status(self, status: Optional[dict[str, Any]], *, force: bool = False) -> None:
        if status == self.status and not force:
            return
        self.status = status
        if self._on_status is not None:
            self._on_status(status)

    def _notify(self, notice: Notice) -> None:
        if self._on_notice is not None:
            self._on_notice(notice)
