from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .auth import AuthStrategy, StaticHeadersAuth
from .errors import ConfigError, ProviderRequestError, ProviderUnavailableError


@dataclass(frozen=True)
class HttpClientConfig:
    base_url: str
    timeout_s: float = 30.0
    headers: Optional[dict[str, str]] = None


@dataclass(frozen=True)
class HttpResult:
    status_code: int
    content_type: str
    body: Any


class HttpClient:
    def __init__(
        self,
        *,
        config: HttpClientConfig,
        auth: Optional[AuthStrategy] = None,
        provider: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._auth = auth or StaticHeadersAuth(headers={})
        self._provider = provider
        self._transport = transport

    async def request(self, method: str, path: str, *, json: Optional[dict[str, Any]] = None) -> HttpResult:
        base = (self._config.base_url or "").rstrip("/")
        if not base:
            raise ConfigError("Base URL não configurada.", details={"provider": self._provider})
        url = f"{base}{path}"
        base_headers = dict(self._config.headers or {})
        auth_headers = await self._auth.get_headers()
        headers = {**base_headers, **auth_headers}

        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_s, transport=self._transport) as client:
                resp = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                "Falha de comunicação com provedor.",
                provider=self._provider,
                details={"error": str(e), "method": str(method or "").upper(), "path": path},
            )

        if resp.status_code >= 500:
            raise ProviderUnavailableError(
                "Provedor indisponível.",
                provider=self._provider,
                status_code=resp.status_code,
                details={"body": _safe_text(resp), "method": str(method or "").upper(), "path": path},
            )
        if resp.status_code >= 400:
            raise ProviderRequestError(
                "Erro retornado pelo provedor.",
                provider=self._provider,
                status_code=resp.status_code,
                transient=False,
                details={
                    "body": _safe_text(resp),
                    "method": str(method or "").upper(),
                    "url": url,
                    "path": path,
                },
            )

        content_type = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
        if content_type.startswith("image/"):
            return HttpResult(status_code=resp.status_code, content_type=content_type, body=resp.content)
        try:
            body = resp.json()
        except Exception:
            body = {"raw_text": _safe_text(resp)}
        return HttpResult(status_code=resp.status_code, content_type=content_type, body=body)


def _safe_text(resp: httpx.Response, limit: int = 4000) -> str:
    try:
        return (resp.text or "")[:limit]
    except Exception:
        return ""
