"""
Evolution instance routes.

- POST /evolution/webhook - Provider connection events
- POST /evolution/sync - Manual reconciliation
- GET /evolution/sync/status - Last sync result / error
- POST /evolution/mark-connected - Mark the tenant's instance connected
- POST /evolution/instances - Create instance, returns QR code PNG
- GET /evolution/instances/{name}/qrcode - Fresh QR code PNG
- GET /evolution/instances/{name}/state - Connection state
- GET /evolution/instances/{name}/diagnostics - Provider and database state side by side
- POST /evolution/logout-delete - Tear down the tenant's instance
- GET /evolution/connection - Tenant's connected instance
- GET /evolution/review-queue - Unmatched webhook events
"""

import hmac
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from ..connection import service
from ..connection.records import ProviderInstanceSnapshot
from ..connection.status import utc_now_iso
from ..jobs import run_reconciliation
from ..models import InstanceCreate, LogoutDeleteRequest, MarkConnectedRequest, SyncRequest
from ..utils.auth_helpers import get_user_id, normalize_email, verify_token
from ..utils.db_helpers import is_supabase_not_configured_error
from ..whatsapp.config import EvolutionSettings, load_connection_config
from ..whatsapp.container import EvolutionContainer, get_evolution_container
from ..whatsapp.errors import (
    ConfigError,
    InstanceNotFoundError,
    InvalidInstanceNameError,
    ProviderRequestError,
    UnresolvedTenantError,
    ValidationError,
    WhatsAppError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/evolution", tags=["Evolution"])


# ==================== HELPER FUNCTIONS ====================

def get_container() -> EvolutionContainer:
    return get_evolution_container()


def _is_service_token(payload: dict) -> bool:
    return str(payload.get("role") or "").lower() == "service_role"


def _is_admin(payload: dict) -> bool:
    app_role = str((payload.get("app_metadata") or {}).get("role") or "").lower()
    return _is_service_token(payload) or app_role == "admin"


def _require_admin(payload: dict) -> None:
    if not _is_admin(payload):
        raise HTTPException(status_code=403, detail="Acesso restrito a administradores")


def _resolve_public_base_url(request: Optional[Request] = None) -> str:
    """Resolve the public base URL for webhooks."""
    public_url = os.getenv("PUBLIC_BACKEND_URL", "").strip()
    if public_url:
        return public_url.rstrip("/")
    if request:
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").strip().lower()
        host = request.headers.get("x-forwarded-host") or request.url.netloc
        return f"{proto}://{host}"
    return ""


def _resolve_webhook_url(request: Request, settings: EvolutionSettings, webhook_path: str) -> str:
    url = settings.webhook_url(webhook_path)
    if url.startswith("http://") or url.startswith("https://"):
        return url
    base = _resolve_public_base_url(request)
    return f"{base}/{url.lstrip('/')}" if base else url


def _evolution_http_error(e: WhatsAppError) -> HTTPException:
    """Convert a provider/domain error to an HTTP exception."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, InvalidInstanceNameError):
        return HTTPException(status_code=400, detail="Nome de instância inválido ou já em uso")
    if isinstance(e, InstanceNotFoundError):
        return HTTPException(status_code=404, detail="Instância não encontrada no provedor")
    if isinstance(e, UnresolvedTenantError):
        return HTTPException(status_code=404, detail="Usuário não encontrado")
    if isinstance(e, ConfigError):
        return HTTPException(status_code=503, detail=e.message)
    if isinstance(e, ProviderRequestError) and e.status_code in {401, 403}:
        return HTTPException(status_code=401, detail="Credenciais do provedor inválidas")
    return HTTPException(status_code=502, detail=f"Erro do provedor: {e.message[:200]}")


def _webhook_secret_matches(request: Request, secret: str) -> bool:
    """No configured secret leaves the webhook open."""
    if not secret:
        return True
    supplied = request.headers.get("x-webhook-secret") or request.query_params.get("secret") or ""
    return hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8"))


def _ensure_instance_owner(container: EvolutionContainer, user_id: str, instance_name: str) -> None:
    owner = container.store.find_by_instance(instance_name)
    if owner is not None and owner.user_id != user_id:
        raise HTTPException(status_code=403, detail="Instância não pertence a este usuário")


# ==================== WEBHOOK ====================

@router.post("/webhook")
async def evolution_webhook(request: Request, container: EvolutionContainer = Depends(get_container)):
    """Provider events. Always 200 for well-formed JSON."""
    try:
        payload = json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="JSON inválido")

    try:
        cfg = container.load_config()
        if not _webhook_secret_matches(request, cfg.evolution.webhook_secret):
            logger.warning("Evolution webhook rejected: secret mismatch")
            return JSONResponse(status_code=401, content={"success": False, "error": "Segredo do webhook inválido"})
        return container.webhook_handler(cfg).handle(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.exception(f"Evolution webhook error: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})


# ==================== SYNC ====================

@router.post("/sync")
async def sync_instances(
    body: Optional[SyncRequest] = None,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    body = body or SyncRequest()
    logger.info(f"Manual sync requested by {get_user_id(payload)} (source={body.source})")
    result = await run_reconciliation(container, automatic=body.automatic, source=body.source)
    if not result.get("success"):
        return JSONResponse(status_code=500, content=result)
    return result


@router.get("/sync/status")
async def sync_status(payload: dict = Depends(verify_token), container: EvolutionContainer = Depends(get_container)):
    try:
        status = container.store.load_job_status()
        counts = container.store.connection_counts()
    except Exception as e:
        logger.error(f"Error loading sync status: {e}")
        if is_supabase_not_configured_error(e):
            raise HTTPException(status_code=503, detail="Supabase não configurado.")
        raise HTTPException(status_code=503, detail="Banco de dados indisponível.")
    return {"lastSync": status.get("last_sync"), "lastSyncError": status.get("last_sync_error"), **counts}


# ==================== CONNECTION STATE ====================

@router.post("/mark-connected")
async def mark_connected(
    body: MarkConnectedRequest,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    user_id = get_user_id(payload)
    if body.user_id and _is_service_token(payload):
        user_id = body.user_id
    elif body.user_id and body.user_id != user_id:
        raise HTTPException(status_code=403, detail="Operação não permitida para outro usuário")

    if not _is_service_token(payload):
        _ensure_instance_owner(container, user_id, body.instance_name.strip())
    try:
        record = service.mark_instance_connected(container.store, user_id, body.instance_name, body.phone_number)
    except WhatsAppError as e:
        raise _evolution_http_error(e)
    return {"success": True, "connection": record.to_status()}


@router.get("/connection")
async def get_connection(payload: dict = Depends(verify_token), container: EvolutionContainer = Depends(get_container)):
    user_id = get_user_id(payload)
    connected = service.get_connected_instance(container.store, user_id)
    if connected is None and payload.get("email"):
        record = container.store.find_by_email(normalize_email(payload.get("email")))
        if record is not None and record.user_id != user_id:
            connected = service.get_connected_instance(container.store, record.user_id)
    return {"connectedInstance": connected}


# ==================== INSTANCES ====================

@router.post("/instances")
async def create_instance(
    body: InstanceCreate,
    request: Request,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    user_id = get_user_id(payload)
    name = body.instance_name.strip()
    _ensure_instance_owner(container, user_id, name)
    if container.store.find_by_user(user_id) is None:
        raise HTTPException(status_code=404, detail="Usuário não encontrado")
    try:
        cfg = container.load_config()
        api = container.api(cfg)
        qr = await api.create_instance(name, _resolve_webhook_url(request, cfg.evolution, body.webhook_path))
        service.bind_instance(container.store, user_id, name)
    except WhatsAppError as e:
        raise _evolution_http_error(e)
    headers = {"X-Pairing-Code": qr.pairing_code} if qr.pairing_code else None
    return Response(content=qr.data, media_type=qr.content_type, headers=headers)


@router.get("/instances/{instance_name}/qrcode")
async def get_instance_qrcode(
    instance_name: str,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    _ensure_instance_owner(container, get_user_id(payload), instance_name)
    try:
        qr = await container.api(container.load_config()).fetch_qr_code(instance_name)
    except WhatsAppError as e:
        raise _evolution_http_error(e)
    return Response(content=qr.data, media_type=qr.content_type)


@router.get("/instances/{instance_name}/state")
async def get_instance_state(
    instance_name: str,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    _ensure_instance_owner(container, get_user_id(payload), instance_name)
    try:
        state = await container.api(container.load_config()).fetch_connection_state(instance_name)
    except WhatsAppError as e:
        raise _evolution_http_error(e)
    return {"instance": instance_name, "state": state, "connected": state == "open"}


@router.get("/instances/{instance_name}/diagnostics")
async def get_instance_diagnostics(
    instance_name: str,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    """Provider state next to the stored rows; either side may be unavailable."""
    name = instance_name.strip()
    database = {"available": True, "userId": None, "record": None, "history": None, "error": None}
    try:
        record = container.store.find_by_instance(name)
    except Exception as e:
        if not _is_admin(payload):
            raise HTTPException(status_code=503, detail="Banco de dados indisponível.")
        logger.error(f"Diagnostics for {name}: database unavailable ({e})")
        record = None
        database.update(available=False, error=str(e))
    if record is not None and record.user_id != get_user_id(payload) and not _is_admin(payload):
        raise HTTPException(status_code=403, detail="Instância não pertence a este usuário")

    try:
        cfg = container.load_config()
    except Exception as e:
        logger.error(f"Diagnostics for {name}: configuration rows unavailable ({e})")
        cfg = load_connection_config()

    provider = {"available": False, "state": None, "connected": False, "error": None}
    try:
        state = await container.api(cfg).fetch_connection_state(name)
        provider.update(available=True, state=state, connected=ProviderInstanceSnapshot(name, status=state).is_open)
    except InvalidInstanceNameError as e:
        raise _evolution_http_error(e)
    except InstanceNotFoundError as e:
        provider.update(available=True, error=e.message)
    except WhatsAppError as e:
        logger.warning(f"Diagnostics for {name}: provider unavailable ({e.code})")
        provider["error"] = e.message

    try:
        if record is not None:
            database.update(
                userId=record.user_id,
                record=record.to_status(),
                history=container.store.find_history(record.user_id, name),
            )
    except Exception as e:
        logger.error(f"Diagnostics for {name}: history lookup failed ({e})")
        database.update(available=False, error=str(e))

    return {"instanceName": name, "provider": provider, "database": database, "checkTime": utc_now_iso()}


@router.post("/logout-delete")
async def logout_delete(
    body: Optional[LogoutDeleteRequest] = None,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    user_id = get_user_id(payload)
    try:
        cfg = container.load_config()
        result = await service.disconnect_and_delete(
            container.api(cfg),
            container.store,
            user_id,
            (body.instance_name if body else None),
            cleanup=cfg.rules.auto_cleanup_on_disconnect,
        )
    except WhatsAppError as e:
        raise _evolution_http_error(e)
    return {**result.to_dict(), "timestamp": utc_now_iso()}


# ==================== REVIEW QUEUE ====================

@router.get("/review-queue")
async def review_queue(
    status: str = "pending",
    limit: int = 50,
    payload: dict = Depends(verify_token),
    container: EvolutionContainer = Depends(get_container),
):
    _require_admin(payload)
    items = container.store.list_review_queue(status=status, limit=max(1, min(limit, 200)))
    return {"items": items, "count": len(items)}
