import base64
import json
import logging
import os
from typing import Any, Dict, Optional, cast

from supabase import AsyncClient, Client, acreate_client, create_client

logger = logging.getLogger(__name__)

_SUPABASE_NOT_CONFIGURED_ERROR = (
    "Supabase não configurado (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)."
)
_SUPABASE_NOT_CONFIGURED_WARNING = (
    "Supabase não configurado: defina SUPABASE_URL e "
    "SUPABASE_SERVICE_ROLE_KEY."
)


def _get_first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


def _decode_jwt_payload_unverified(token: str) -> Dict[str, Any]:
    try:
        parts = (token or "").split(".")
        if len(parts) < 2:
            return {}
        payload_b64 = parts[1]
        padding = "=" * (-len(payload_b64) % 4)
        raw = base64.urlsafe_b64decode(payload_b64 + padding)
        obj = json.loads(raw.decode("utf-8"))
        return obj if isinstance(obj, dict) else {}
    except (ValueError, UnicodeDecodeError):
        return {}


def _is_service_role_key(key: Optional[str]) -> bool:
    if not key:
        return False
    payload = _decode_jwt_payload_unverified(key)
    role = str(payload.get("role") or "").strip().lower()
    return role == "service_role"


SUPABASE_URL = _get_first_env("SUPABASE_URL") or ""
_candidate_service_key = _get_first_env(
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
)
# Sessions subscribe to their own row with the public key.
SUPABASE_ANON_KEY = _get_first_env("SUPABASE_ANON_KEY") or ""

# The reconciliation job writes every tenant row, so only a service-role key will do.
SUPABASE_SERVICE_ROLE_KEY = (
    _candidate_service_key
    if _is_service_role_key(_candidate_service_key)
    else None
)


class _SupabaseNotConfigured:
    def table(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    def rpc(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)


if SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY:
    supabase: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
else:
    logger.warning(_SUPABASE_NOT_CONFIGURED_WARNING)
    supabase = cast(Client, _SupabaseNotConfigured())


async def create_realtime_client() -> AsyncClient:
    """Async client for realtime channels."""
    key = SUPABASE_ANON_KEY or SUPABASE_SERVICE_ROLE_KEY
    if not (SUPABASE_URL and key):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)
    return await acreate_client(SUPABASE_URL, key)
