"""Modelos Pydantic do backend de afiliados.

Este módulo re-exporta todos os modelos para facilitar importações.
"""
from .connections import (
    InstanceCreate,
    MarkConnectedRequest,
    LogoutDeleteRequest,
    SyncRequest,
)

__all__ = [
    "InstanceCreate",
    "MarkConnectedRequest",
    "LogoutDeleteRequest",
    "SyncRequest",
]
