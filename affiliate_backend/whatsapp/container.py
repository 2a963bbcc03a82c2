from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

import httpx

from ..connection.events import EventWebhookHandler
from ..connection.reconciliation import ReconciliationJob
from ..connection.store import ConnectionStore
from ..evolution_api import EvolutionAPI
from .config import SYSTEM_CONFIGURATION_KEYS, ConnectionConfig, load_connection_config
from .observability import Observability
from .retry import ProviderRetry


@lru_cache(maxsize=1)
def get_evolution_container() -> "EvolutionContainer":
    return EvolutionContainer.build()


class EvolutionContainer:
    """Process-wide wiring. Configuration is rebuilt per request via ``load_config``."""

    def __init__(
        self,
        *,
        store: ConnectionStore,
        obs: Observability,
        retry: ProviderRetry,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.obs = obs
        self.retry = retry
        self.transport = transport

    @staticmethod
    def build(client: Any = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "EvolutionContainer":
        if client is None:
            from ..supabase_client import supabase as client
        obs = Observability(logging.getLogger("evolution"))
        return EvolutionContainer(
            store=ConnectionStore(client),
            obs=obs,
            retry=ProviderRetry(obs=obs),
            transport=transport,
        )

    def load_config(self) -> ConnectionConfig:
        rows = self.store.load_configuration_rows(SYSTEM_CONFIGURATION_KEYS)
        return load_connection_config(rows)

    def api(self, cfg: ConnectionConfig) -> EvolutionAPI:
        return EvolutionAPI.from_settings(cfg.evolution, transport=self.transport)

    def reconciliation_job(self, cfg: ConnectionConfig) -> ReconciliationJob:
        return ReconciliationJob(api=self.api(cfg), store=self.store, retry=self.retry, obs=self.obs)

    def webhook_handler(self, cfg: ConnectionConfig) -> EventWebhookHandler:
        return EventWebhookHandler(store=self.store, rules=cfg.rules, obs=self.obs)
