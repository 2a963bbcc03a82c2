"""Interactive connection flow: create instance, show QR, wait for the scan.

The polling loop is an asyncio task owned by the wizard; ``close()`` and the
terminal states cancel it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..evolution_api import EvolutionAPI, QrImage, validate_instance_name
from ..whatsapp.config import ConnectionRules, EvolutionSettings
from ..whatsapp.errors import InstanceNotFoundError, InvalidInstanceNameError, ValidationError, WhatsAppError
from ..whatsapp.observability import LogContext, Observability

logger = logging.getLogger(__name__)


class WizardState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    AWAITING_SCAN = "awaiting_scan"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class Notice:
    level: str
    title: str
    message: str
    field: Optional[str] = None


class WizardListener:
    """Receives wizard updates. Subclass and override what you need."""

    def state_changed(self, state: WizardState) -> None:
        pass

    def qr_changed(self, qr: QrImage) -> None:
        pass

    def qr_released(self, qr: QrImage) -> None:
        pass

    def notice(self, notice: Notice) -> None:
        pass


class ConnectionWizard:
    def __init__(
        self,
        api: EvolutionAPI,
        *,
        mark_connected: Callable[[str, Optional[str]], Awaitable[Any]],
        bind_instance: Optional[Callable[[str], Awaitable[Any]]] = None,
        settings: Optional[EvolutionSettings] = None,
        rules: Optional[ConnectionRules] = None,
        listener: Optional[WizardListener] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api = api
        self._mark_connected = mark_connected
        self._bind_instance = bind_instance
        self._settings = settings or EvolutionSettings()
        self._rules = rules or ConnectionRules()
        self._listener = listener or WizardListener()
        self._sleep = sleep
        self._obs = Observability(logger)

        self.state = WizardState.IDLE
        self.attempts = 0
        self.qr: Optional[QrImage] = None
        self.instance_name: Optional[str] = None
        self._webhook_path: Optional[str] = None
        self._created = False
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def max_attempts(self) -> int:
        return max(1, int(self._rules.wizard_max_attempts))

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self, instance_name: str, webhook_path: str) -> WizardState:
        if self.state not in (WizardState.IDLE, WizardState.FAILED):
            return self.state
        if not (instance_name or "").strip():
            self._validation_notice(ValidationError("instance_name", "Informe o nome da instância."))
            return self.state
        if not (webhook_path or "").strip():
            self._validation_notice(ValidationError("webhook_path", "Informe o caminho do webhook."))
            return self.state
        try:
            name = validate_instance_name(instance_name)
        except InvalidInstanceNameError as e:
            self._validation_notice(ValidationError("instance_name", e.message))
            return self.state

        if self.state == WizardState.FAILED and name == self.instance_name:
            return await self.retry()
        self.instance_name = name
        self._webhook_path = webhook_path.strip()
        self._created = False
        await self._create()
        return self.state

    async def retry(self) -> WizardState:
        """Ask for a new QR for the existing instance; recreate it only if it is gone."""
        if self.state != WizardState.FAILED or not self.instance_name:
            return self.state
        if self._created:
            ctx = LogContext(provider="evolution", instance_name=self.instance_name)
            self._set_state(WizardState.CREATING)
            try:
                qr = await self._api.fetch_qr_code(self.instance_name)
            except InstanceNotFoundError:
                self._obs.info("evolution.wizard.instance_missing", ctx=ctx)
                self._created = False
            except WhatsAppError as e:
                self._obs.warning("evolution.wizard.qr_refresh_failed", ctx=ctx, code=e.code)
                self._emit(Notice("error", "Falha na conexão", "Não foi possível gerar um novo QR Code. Tente novamente."))
                self._set_state(WizardState.FAILED)
                return self.state
            else:
                self._await_scan(qr)
                return self.state
        await self._create()
        return self.state

    async def close(self) -> None:
        await self._stop_polling()
        self._replace_qr(None)
        if self.state in (WizardState.CREATING, WizardState.AWAITING_SCAN):
            self._set_state(WizardState.IDLE)

    # ==================== TRANSITIONS ====================

    async def _create(self) -> None:
        name = self.instance_name or ""
        ctx = LogContext(provider="evolution", instance_name=name)
        self._set_state(WizardState.CREATING)
        try:
            qr = await self._api.create_instance(name, self._settings.webhook_url(self._webhook_path or ""))
        except InvalidInstanceNameError as e:
            self._obs.warning("evolution.wizard.create_rejected", ctx=ctx, status=e.status_code)
            self._emit(Notice("error", "Nome inválido", e.message, field="instance_name"))
            self._set_state(WizardState.IDLE)
            return
        except WhatsAppError as e:
            self._obs.warning("evolution.wizard.create_failed", ctx=ctx, code=e.code)
            self._emit(Notice("error", "Erro ao criar instância", "Não foi possível criar a instância. Tente novamente."))
            self._set_state(WizardState.IDLE)
            return

        self._created = True
        if self._bind_instance is not None:
            try:
                await self._bind_instance(name)
            except Exception as e:
                self._obs.warning("evolution.wizard.bind_failed", ctx=ctx, error=str(e))
                self._emit(Notice("warning", "Aviso", "Instância criada, mas não foi possível salvá-la no seu perfil."))

        self._await_scan(qr)

    def _await_scan(self, qr: QrImage) -> None:
        self._replace_qr(qr)
        self.attempts = 0
        self._set_state(WizardState.AWAITING_SCAN)
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        name = self.instance_name or ""
        ctx = LogContext(provider="evolution", instance_name=name)
        while True:
            await self._sleep(self._rules.wizard_poll_interval_s)
            try:
                state = await self._api.fetch_connection_state(name)
            except WhatsAppError as e:
                self._obs.warning("evolution.wizard.poll_failed", ctx=ctx, code=e.code)
                self._emit(Notice("warning", "Falha ao verificar conexão", e.message))
                continue

            if state == "open":
                await self._confirm()
                return

            self.attempts += 1
            self._emit(Notice("info", "Aguardando conexão", f"Tentativa {self.attempts} de {self.max_attempts}"))
            if self.attempts >= self.max_attempts:
                self._set_state(WizardState.FAILED)
                await self._refresh_qr()
                return

    async def _confirm(self) -> None:
        name = self.instance_name or ""
        self._set_state(WizardState.CONFIRMED)
        self._replace_qr(None)
        try:
            await self._mark_connected(name, None)
        except Exception as e:
            self._obs.error("evolution.wizard.mark_connected_failed", ctx=LogContext(instance_name=name), error=str(e))
            self._emit(Notice("warning", "Aviso", "WhatsApp conectado, mas o status ainda não foi salvo."))
            return
        self._emit(Notice("success", "WhatsApp conectado", "Sua instância foi conectada com sucesso."))

    async def _refresh_qr(self) -> None:
        name = self.instance_name or ""
        try:
            qr = await self._api.fetch_qr_code(name)
        except WhatsAppError as e:
            self._obs.warning("evolution.wizard.qr_refresh_failed", ctx=LogContext(instance_name=name), code=e.code)
            self._emit(Notice("error", "Falha na conexão", "Não foi possível gerar um novo QR Code. Tente novamente."))
            return
        self._emit(Notice("info", "Novo QR Code", "Escaneie o novo QR Code para conectar."))
        self._await_scan(qr)

    # ==================== HELPERS ====================

    def _set_state(self, state: WizardState) -> None:
        if state in (WizardState.CONFIRMED, WizardState.FAILED):
            self._cancel_polling()
        self.state = state
        self._listener.state_changed(state)

    def _replace_qr(self, qr: Optional[QrImage]) -> None:
        previous = self.qr
        self.qr = qr
        if previous is not None:
            self._listener.qr_released(previous)
        if qr is not None:
            self._listener.qr_changed(qr)

    def _cancel_polling(self) -> None:
        task = self._poll_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _validation_notice(self, err: ValidationError) -> None:
        self._emit(Notice("error", "Dados inválidos", err.message, field=err.field))

    def _emit(self, notice: Notice) -> None:
        self._listener.notice(notice)
