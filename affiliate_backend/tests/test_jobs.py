from __future__ import annotations

import json

import httpx
import pytest

from affiliate_backend import jobs
from affiliate_backend.connection.records import KIWIFY_TABLE, SYSTEM_CONFIG_TABLE
from affiliate_backend.whatsapp.container import EvolutionContainer

from .conftest import FakeSupabase, kiwify_row


def _container(db, instances=()):
    requests = []

    def handler(request):
        requests.append(request.url.path)
        return httpx.Response(200, json=list(instances))

    return EvolutionContainer.build(db, transport=httpx.MockTransport(handler)), requests


@pytest.mark.anyio
async def test_automatic_run_skipped_when_disabled(evolution_env) -> None:
    db = FakeSupabase({SYSTEM_CONFIG_TABLE: [{"key": "auto_sync_enabled", "value": "false"}]})
    container, requests = _container(db)

    out = await jobs.run_reconciliation(container, automatic=True, source="auto-sync")

    assert out["success"] is True and out["skipped"] is True
    assert requests == []
    assert db.writes == []


@pytest.mark.anyio
async def test_manual_run_ignores_auto_sync_flag(evolution_env) -> None:
    db = FakeSupabase(
        {
            SYSTEM_CONFIG_TABLE: [{"key": "auto_sync_enabled", "value": "false"}],
            KIWIFY_TABLE: [kiwify_row("u1", "shop1")],
        }
    )
    container, requests = _container(db, [{"name": "shop1", "connectionStatus": "open"}])

    out = await jobs.run_reconciliation(container, automatic=False, source="manual")

    assert out["success"] is True
    assert requests == ["/instance/fetchInstances"]
    assert db.row(KIWIFY_TABLE, user_id="u1")["is_connected"] is True


@pytest.mark.anyio
async def test_missing_api_key_is_recorded_as_sync_error(evolution_env, monkeypatch) -> None:
    monkeypatch.delenv("EVOLUTION_API_KEY")
    db = FakeSupabase()
    container, requests = _container(db)

    out = await jobs.run_reconciliation(container, automatic=True, source="auto-sync")

    assert out["success"] is False
    assert requests == []
    saved = json.loads(db.row(SYSTEM_CONFIG_TABLE, key="last_sync_error")["value"])
    assert saved["source"] == "auto-sync"
    assert saved["error"] == out["error"]


def test_cli_sync_prints_result_and_exit_code(evolution_env, monkeypatch, capsys) -> None:
    db = FakeSupabase({KIWIFY_TABLE: [kiwify_row("u1", "shop1")]})
    container, _ = _container(db, [{"name": "shop1", "connectionStatus": "close"}])
    monkeypatch.setattr(jobs, "get_evolution_container", lambda: container)

    code = jobs.main(["sync", "--manual"])

    printed = json.loads(capsys.readouterr().out)
    assert code == 0
    assert printed["result"]["source"] == "manual"
    assert printed["result"]["synced_count"] == 1


def test_cli_default_command_is_scheduled_sync(evolution_env, monkeypatch, capsys) -> None:
    monkeypatch.delenv("EVOLUTION_API_KEY")
    container, _ = _container(FakeSupabase())
    monkeypatch.setattr(jobs, "get_evolution_container", lambda: container)

    code = jobs.main([])

    assert code == 1
    assert json.loads(capsys.readouterr().out)["success"] is False
