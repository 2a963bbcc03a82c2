from __future__ import annotations

from dataclasses import dataclass

from .errors import ConfigError


class AuthStrategy:
    async def get_headers(self) -> dict[str, str]:
        raise NotImplementedError


@dataclass(frozen=True)
class StaticHeadersAuth(AuthStrategy):
    headers: dict[str, str]

    async def get_headers(self) -> dict[str, str]:
        return dict(self.headers)


@dataclass(frozen=True)
class ApiKeyHeaderAuth(AuthStrategy):
    header_name: str
    api_key: str

    def __post_init__(self) -> None:
        # Requests without a key must never reach the provider unauthenticated.
        if not (self.api_key or "").strip():
            raise ConfigError("Evolution API não configurada (api_key).", details={"header": self.header_name})

    async def get_headers(self) -> dict[str, str]:
        return {self.header_name: self.api_key}
