"""Evolution API client for the instance-management surface."""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .connection.records import ConnectionEvent, ProviderInstanceSnapshot
from .whatsapp.auth import ApiKeyHeaderAuth
from .whatsapp.config import EvolutionSettings
from .whatsapp.errors import (
    ConfigError,
    InstanceNotFoundError,
    InvalidInstanceNameError,
    ProviderRequestError,
    ProviderUnavailableError,
    WhatsAppError,
)
from .whatsapp.http import HttpClient, HttpClientConfig, HttpResult

logger = logging.getLogger(__name__)

PROVIDER_ID = "evolution"
WEBHOOK_EVENTS = ["CONNECTION_UPDATE", "QRCODE_UPDATED"]
_MAX_INSTANCE_NAME = 80


@dataclass(frozen=True)
class QrImage:
    data: bytes
    content_type: str = "image/png"
    pairing_code: Optional[str] = None


@dataclass(frozen=True)
class TeardownStep:
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TeardownResult:
    instance_name: str
    logout: TeardownStep
    delete: TeardownStep

    @property
    def success(self) -> bool:
        # Teardown is best-effort: step failures are reported, not fatal.
        return True

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "instance": self.instance_name,
            "logout": {"ok": self.logout.ok, "statusCode": self.logout.status_code, "error": self.logout.error},
            "delete": {"ok": self.delete.ok, "statusCode": self.delete.status_code, "error": self.delete.error},
        }


def validate_instance_name(instance_name: str) -> str:
    """Return the trimmed name or raise ``InvalidInstanceNameError``."""
    name = (instance_name or "").strip()
    if not name or len(name) > _MAX_INSTANCE_NAME:
        raise InvalidInstanceNameError(name)
    for ch in name:
        if not (ch.isalnum() or ch in {"_", "-", "."}):
            raise InvalidInstanceNameError(name)
    return name


class EvolutionAPI:
    """Client for Evolution API v2"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not (base_url or "").strip():
            raise ConfigError("Evolution API não configurada (base_url).")
        self.base_url = base_url.rstrip('/')
        self._http = HttpClient(
            config=HttpClientConfig(
                base_url=self.base_url,
                timeout_s=timeout_s,
                headers={'Content-Type': 'application/json'},
            ),
            auth=ApiKeyHeaderAuth(header_name='apikey', api_key=(api_key or '').strip()),
            provider=PROVIDER_ID,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: EvolutionSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "EvolutionAPI":
        return cls(settings.base_url, settings.api_key, timeout_s=settings.timeout_s, transport=transport)

    async def _request(self, method: str, endpoint: str, data: dict = None) -> HttpResult:
        return await self._http.request(method, endpoint, json=data)

    # ==================== INSTANCE MANAGEMENT ====================

    async def create_instance(self, instance_name: str, webhook_url: str = None) -> QrImage:
        """Create a new WhatsApp instance and return its first QR code."""
        name = validate_instance_name(instance_name)
        data: Dict[str, Any] = {
            'instanceName': name,
            'integration': 'WHATSAPP-BAILEYS',
            'qrcode': True,
            'rejectCall': False,
            'groupsIgnore': True,
            'alwaysOnline': False,
            'readMessages': False,
            'readStatus': False,
            'syncFullHistory': False
        }

        if webhook_url:
            data['webhook'] = {
                'enabled': True,
                'url': webhook_url,
                'byEvents': False,
                'base64': True,
                'events': list(WEBHOOK_EVENTS)
            }

        try:
            result = await self._request('POST', '/instance/create', data)
        except ProviderUnavailableError:
            raise
        except ProviderRequestError as e:
            if e.status_code in {400, 403, 409, 422}:
                raise InvalidInstanceNameError(name, status_code=e.status_code, details={"body": (e.details or {}).get("body")})
            raise

        qr = _extract_qr_image(result)
        if qr is None:
            # Some deployments only hand out the code on /instance/connect.
            return await self.fetch_qr_code(name)
        return qr

    async def fetch_qr_code(self, instance_name: str) -> QrImage:
        """Fetch a fresh scannable code for an existing instance."""
        name = validate_instance_name(instance_name)
        result = await self._request_for_instance('GET', f'/instance/connect/{name}', name)
        qr = _extract_qr_image(result)
        if qr is None:
            raise ProviderUnavailableError(
                "Instância sem QR Code disponível.",
                details={"instance_name": name},
            )
        return qr

    async def fetch_connection_state(self, instance_name: str) -> str:
        """Return ``"open"`` or ``"closed"``."""
        name = validate_instance_name(instance_name)
        result = await self._request_for_instance('GET', f'/instance/connectionState/{name}', name)
        return "open" if _is_open_state(result.body) else "closed"

    async def list_all_instances(self) -> List[ProviderInstanceSnapshot]:
        """Fetch every instance in a single call."""
        result = await self._request('GET', '/instance/fetchInstances')
        body = result.body
        if isinstance(body, dict):
            body = body.get('instances') or body.get('data') or body.get('response') or []
        if not isinstance(body, list):
            raise ProviderUnavailableError(
                "Resposta inesperada ao listar instâncias.",
                details={"type": type(result.body).__name__},
            )
        snapshots: List[ProviderInstanceSnapshot] = []
        for item in body:
            snapshot = ProviderInstanceSnapshot.from_provider(item)
            if snapshot is None:
                logger.warning(f"Skipping provider instance without name: {item!r:.200}")
                continue
            snapshots.append(snapshot)
        return snapshots

    async def logout_instance(self, instance_name: str) -> HttpResult:
        """Logout from WhatsApp"""
        return await self._request('DELETE', f'/instance/logout/{instance_name}')

    async def delete_instance(self, instance_name: str) -> HttpResult:
        """Delete an instance"""
        return await self._request('DELETE', f'/instance/delete/{instance_name}')

    async def logout_and_delete(self, instance_name: str) -> TeardownResult:
        """Logout the session, then delete the instance; neither step aborts the other."""
        name = (instance_name or '').strip()
        if not name:
            raise InvalidInstanceNameError(name)
        logger.info(f"Starting Evolution logout/delete for instance: {name}")
        logout = await self._teardown_step('logout', self.logout_instance, name)
        delete = await self._teardown_step('delete', self.delete_instance, name)
        logger.info(f"Evolution cleanup completed for instance: {name} logout_ok={logout.ok} delete_ok={delete.ok}")
        return TeardownResult(instance_name=name, logout=logout, delete=delete)

    async def _teardown_step(self, step: str, fn, name: str) -> TeardownStep:
        try:
            result = await fn(name)
        except WhatsAppError as e:
            status_code = (e.details or {}).get("status_code")
            logger.warning(f"Evolution {step} failed for {name}: status={status_code} error={e}")
            return TeardownStep(ok=False, status_code=status_code, error=str(e))
        logger.info(f"Evolution {step} successful for: {name}")
        return TeardownStep(ok=True, status_code=result.status_code)

    async def _request_for_instance(self, method: str, endpoint: str, name: str) -> HttpResult:
        try:
            return await self._request(method, endpoint)
        except ProviderUnavailableError:
            raise
        except ProviderRequestError as e:
            if e.status_code == 404:
                raise InstanceNotFoundError(name)
            raise


# ==================== PARSERS ====================

def parse_connection_event(payload: Dict[str, Any]) -> ConnectionEvent:
    """Normalize a provider webhook payload.

    Accepts the documented ``{event, instance: {instanceName, status}, data}``
    shape as well as Evolution v2's ``{event: "connection.update",
    instance: "<name>", data: {state}}``.
    """
    raw_event = str(payload.get('event') or '').strip()
    event = raw_event.upper().replace('.', '_')

    instance = payload.get('instance')
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}

    if isinstance(instance, dict):
        instance_name = instance.get('instanceName') or instance.get('name') or instance.get('instance_name')
        status = instance.get('status') or instance.get('state') or data.get('state') or data.get('status')
    else:
        instance_name = instance or payload.get('instanceName') or payload.get('instance_name') or data.get('instance')
        status = data.get('state') or data.get('status')

    remote_jid = data.get('remoteJid') or data.get('wuid') or data.get('owner')
    return ConnectionEvent(
        event=event,
        instance_name=str(instance_name).strip() if isinstance(instance_name, str) and instance_name.strip() else None,
        status=str(status or '').strip().lower(),
        remote_jid=remote_jid if isinstance(remote_jid, str) and remote_jid.strip() else None,
        display_name=data.get('displayName') or data.get('profileName'),
        profile_pic_url=data.get('profilePicUrl') or data.get('profilePictureUrl'),
        raw=payload,
    )


def _is_open_state(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    state_val = str(body.get('state') or body.get('status') or '').lower()
    if state_val in {'open', 'connected'}:
        return True
    instance = body.get('instance') or {}
    if isinstance(instance, dict):
        inst_state = str(instance.get('state') or instance.get('status') or '').lower()
        if inst_state in {'open', 'connected'}:
            return True
    return False


def _extract_qr_image(result: HttpResult) -> Optional[QrImage]:
    if isinstance(result.body, (bytes, bytearray)):
        return QrImage(data=bytes(result.body), content_type=result.content_type or 'image/png')
    value = _extract_qrcode_value(result.body)
    if not value:
        return None
    content_type = 'image/png'
    encoded = value
    if value.startswith('data:') and ';base64,' in value:
        header, encoded = value.split(';base64,', 1)
        content_type = header[len('data:'):] or content_type
    try:
        data = base64.b64decode(encoded + ('=' * ((-len(encoded)) % 4)))
    except (binascii.Error, ValueError):
        return None
    pairing_code = None
    if isinstance(result.body, dict):
        qrcode = result.body.get('qrcode') if isinstance(result.body.get('qrcode'), dict) else result.body
        pairing_code = qrcode.get('pairingCode')
    return QrImage(data=data, content_type=content_type, pairing_code=pairing_code)


def _extract_qrcode_value(obj: Any, depth: int = 0) -> Optional[str]:
    if not obj or depth > 4:
        return None
    if isinstance(obj, str):
        return obj if obj.startswith("data:image") else None
    if isinstance(obj, dict):
        for key in ["base64", "qrcode", "qr", "qrCode"]:
            val = obj.get(key)
            if isinstance(val, str) and (val.startswith("data:image") or len(val) > 100):
                return val
        for val in obj.values():
            result = _extract_qrcode_value(val, depth + 1)
            if result:
                return result
    return None
