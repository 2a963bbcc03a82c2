from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class WhatsAppError(Exception):
    message: str
    code: str = "whatsapp_error"
    transient: bool = False
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class ConfigError(WhatsAppError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="config_error", transient=False, details=details)


class ProviderRequestError(WhatsAppError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        details: Optional[dict[str, Any]] = None,
        code: str = "provider_request_error",
    ):
        merged_details: dict[str, Any] = {"provider": provider}
        if status_code is not None:
            merged_details["status_code"] = status_code
        if details:
            merged_details.update(details)
        super().__init__(message=message, code=code, transient=transient, details=merged_details)

    @property
    def status_code(self) -> Optional[int]:
        return (self.details or {}).get("status_code")


class ProviderUnavailableError(ProviderRequestError):
    def __init__(
        self,
        message: str,
        *,
        provider: str = "evolution",
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            transient=True,
            details=details,
            code="provider_unavailable",
        )


class InstanceNotFoundError(ProviderRequestError):
    def __init__(self, instance_name: str, *, provider: str = "evolution", details: Optional[dict[str, Any]] = None):
        merged = {"instance_name": instance_name, **(details or {})}
        super().__init__(
            f"Instância não encontrada: {instance_name}",
            provider=provider,
            status_code=404,
            transient=False,
            details=merged,
            code="instance_not_found",
        )


class InvalidInstanceNameError(ProviderRequestError):
    def __init__(self, instance_name: str, *, provider: str = "evolution", status_code: Optional[int] = None, details: Optional[dict[str, Any]] = None):
        merged = {"instance_name": instance_name, **(details or {})}
        super().__init__(
            f"Nome de instância inválido: {instance_name!r}",
            provider=provider,
            status_code=status_code,
            transient=False,
            details=merged,
            code="invalid_instance_name",
        )


class UnresolvedTenantError(WhatsAppError):
    def __init__(self, instance_name: str, *, candidates: int = 0):
        super().__init__(
            message=f"Nenhum usuário encontrado para a instância: {instance_name}",
            code="unresolved_tenant",
            transient=False,
            details={"instance_name": instance_name, "candidates": candidates},
        )


class PartialUpsertError(WhatsAppError):
    def __init__(self, instance_name: str, *, error: str):
        super().__init__(
            message=f"Falha ao atualizar instância {instance_name}: {error}",
            code="partial_upsert_failure",
            transient=False,
            details={"instance_name": instance_name, "error": error},
        )


class ValidationError(WhatsAppError):
    def __init__(self, field: str, message: str):
        super().__init__(message=message, code="validation_error", transient=False, details={"field": field})

    @property
    def field(self) -> str:
        return (self.details or {}).get("field", "")
