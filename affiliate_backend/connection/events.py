"""Provider-pushed connection events."""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..evolution_api import parse_connection_event
from ..utils.phone_utils import extract_phone_from_jid
from ..whatsapp.config import ConnectionRules
from ..whatsapp.errors import UnresolvedTenantError, ValidationError
from ..whatsapp.observability import LogContext, Observability
from .records import ConnectionEvent, ConnectionRecord
from .status import apply_provider_status, utc_now_iso
from .store import ConnectionStore

logger = logging.getLogger(__name__)


class EventWebhookHandler:
    """Applies ``CONNECTION_UPDATE`` pushes to the matching tenant row.

    Resolution is by exact instance name. Events that match nobody are
    parked in the review queue for an operator instead of being bound to a
    guessed tenant, unless ``webhook_fallback_auto_bind`` is on and exactly
    one unbound tenant exists.
    """

    def __init__(
        self,
        *,
        store: ConnectionStore,
        rules: Optional[ConnectionRules] = None,
        obs: Optional[Observability] = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self._store = store
        self._rules = rules or ConnectionRules()
        self._obs = obs or Observability(logger)
        self._clock = clock

    def handle(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError("body", "Payload de evento inválido.")

        event = parse_connection_event(payload)
        ctx = LogContext(provider="evolution", instance_name=event.instance_name)
        self._obs.info("evolution.webhook.received", ctx=ctx, event_name=event.event or "-", status=event.status or "-")

        action = self._dispatch(event, ctx)
        return {"success": True, "event": event.event, "instance": event.instance_name, "action": action}

    def _dispatch(self, event: ConnectionEvent, ctx: LogContext) -> str:
        if not event.is_connection_update:
            return "ignored"
        if not event.instance_name:
            self._obs.error("evolution.webhook.missing_instance", ctx=ctx)
            return "ignored"
        if not event.is_open:
            self._obs.info("evolution.webhook.not_open", ctx=ctx, status=event.status or "-")
            return "ignored"

        record = self._store.find_by_instance(event.instance_name)
        if record is not None:
            self._apply(record, event, bind=False)
            return "applied"

        candidates = self._store.find_unbound_candidates()
        err = UnresolvedTenantError(event.instance_name, candidates=len(candidates))
        self._obs.error("evolution.webhook.unresolved_tenant", ctx=ctx, code=err.code, candidates=len(candidates))
        if not candidates:
            return "unresolved"

        if self._rules.webhook_fallback_auto_bind and len(candidates) == 1:
            self._obs.warning("evolution.webhook.fallback_bind", ctx=ctx, user=candidates[0].user_id)
            self._apply(candidates[0], event, bind=True)
            return "auto_bound"

        self._store.enqueue_review(
            instance_name=event.instance_name,
            event=event.raw,
            candidates=candidates,
            now=self._clock(),
        )
        self._obs.warning("evolution.webhook.queued_for_review", ctx=ctx, candidates=len(candidates))
        return "queued_for_review"

    def _apply(self, record: ConnectionRecord, event: ConnectionEvent, *, bind: bool) -> None:
        now = self._clock()
        mutation = apply_provider_status(record, event.to_snapshot(), now, last_event=event.raw)
        if bind:
            mutation["instance_name"] = event.instance_name
        self._store.update_record(record.user_id, mutation)
        self._store.upsert_instance(
            user_id=record.user_id,
            instance_name=event.instance_name or "",
            phone_number=extract_phone_from_jid(event.remote_jid or "") or None,
            is_connected=True,
            now=now,
        )
        self._obs.info(
            "evolution.webhook.applied",
            ctx=LogContext(user_id=record.user_id, provider="evolution", instance_name=event.instance_name),
            was_connected=record.is_connected,
        )
