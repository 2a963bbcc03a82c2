from __future__ import annotations

import logging
from typing import Any, Optional

from ..evolution_api import EvolutionAPI, TeardownResult, validate_instance_name
from ..utils.phone_utils import extract_phone_from_jid
from ..whatsapp.errors import UnresolvedTenantError, ValidationError
from ..whatsapp.observability import LogContext, Observability
from .records import ConnectionRecord, ProviderInstanceSnapshot
from .status import apply_provider_status, apply_to_record, utc_now_iso
from .store import ConnectionStore

_obs = Observability(logging.getLogger(__name__))


def bind_instance(store: ConnectionStore, user_id: str, instance_name: str) -> None:
    """Record the instance the tenant just created, still disconnected."""
    name = validate_instance_name(instance_name)
    if not (user_id or "").strip():
        raise ValidationError("user_id", "Usuário obrigatório.")
    ctx = LogContext(user_id=user_id, instance_name=name)
    record = store.find_by_user(user_id)
    if record is None:
        _obs.error("evolution.instance.bind_unknown_user", ctx=ctx)
        raise UnresolvedTenantError(name)
    if record.instance_name == name:
        return

    stamp = utc_now_iso()
    # A new name starts from a clean, disconnected row.
    store.clear_instance(user_id, stamp, instance_name=name)
    if record.instance_name and record.is_connected:
        store.upsert_instance(
            user_id=user_id,
            instance_name=record.instance_name,
            phone_number=None,
            is_connected=False,
            now=stamp,
        )
    _obs.info("evolution.instance.bound", ctx=ctx, previous=record.instance_name)


def mark_instance_connected(
    store: ConnectionStore,
    user_id: str,
    instance_name: str,
    phone_number: Optional[str] = None,
    *,
    now: Optional[str] = None,
) -> ConnectionRecord:
    """Bind ``instance_name`` to the tenant and mark it connected in one write."""
    if not (user_id or "").strip():
        raise ValidationError("user_id", "Usuário obrigatório.")
    name = validate_instance_name(instance_name)
    stamp = now or utc_now_iso()
    ctx = LogContext(user_id=user_id, provider="evolution", instance_name=name)

    record = store.find_by_user(user_id)
    if record is None:
        _obs.error("evolution.mark_connected.unknown_user", ctx=ctx)
        raise UnresolvedTenantError(name)

    snapshot = ProviderInstanceSnapshot(instance_name=name, status="open", owner=phone_number or None)
    mutation = apply_provider_status(record, snapshot, stamp)
    mutation["instance_name"] = name
    store.update_record(user_id, mutation)
    store.upsert_instance(
        user_id=user_id,
        instance_name=name,
        phone_number=extract_phone_from_jid(phone_number or "") or None,
        is_connected=True,
        now=stamp,
    )
    _obs.info("evolution.mark_connected.ok", ctx=ctx, was_connected=record.is_connected)
    return apply_to_record(record, mutation)


async def disconnect_and_delete(
    api: EvolutionAPI,
    store: ConnectionStore,
    user_id: str,
    instance_name: Optional[str] = None,
    *,
    cleanup: bool = True,
) -> TeardownResult:
    """Tear down the remote instance (best-effort) and unbind the tenant row.

    With ``cleanup`` off the row keeps its provider profile and credentials;
    only the binding and the connected state are reset.
    """
    record = store.find_by_user(user_id)
    name = (instance_name or "").strip() or (record.instance_name if record else None)
    if not name:
        raise ValidationError("instance_name", "Nenhuma instância vinculada a este usuário.")
    if record is not None and record.instance_name and record.instance_name != name:
        raise ValidationError("instance_name", "Instância não pertence a este usuário.")
    if record is None or not record.instance_name:
        owner = store.find_by_instance(name)
        if owner is not None and owner.user_id != user_id:
            raise ValidationError("instance_name", "Instância não pertence a este usuário.")

    ctx = LogContext(user_id=user_id, provider="evolution", instance_name=name)
    result = await api.logout_and_delete(name)
    _obs.info(
        "evolution.teardown.done",
        ctx=ctx,
        logout_ok=result.logout.ok,
        delete_ok=result.delete.ok,
        cleanup=cleanup,
    )

    stamp = utc_now_iso()
    if record is not None:
        store.clear_instance(user_id, stamp, keep_metadata=not cleanup)
    store.upsert_instance(user_id=user_id, instance_name=name, phone_number=None, is_connected=False, now=stamp)
    return result


def get_connected_instance(store: ConnectionStore, user_id: str) -> Optional[dict[str, Any]]:
    record = store.find_by_user(user_id)
    if record is not None and record.is_connected and record.instance_name:
        return {
            "instance_name": record.instance_name,
            "phone_number": record.remote_identifier,
            "is_connected": True,
            "connected_at": record.connected_at,
        }
    if record is not None and record.instance_name:
        # A bound row is authoritative; history only covers unbound tenants.
        return None
    return store.latest_connected_instance(user_id)
