from __future__ import annotations

import logging

import pytest

from affiliate_backend.connection.records import KIWIFY_TABLE
from affiliate_backend.connection.store import ConnectionStore
from affiliate_backend.utils import db_helpers

from .conftest import FakeSupabase, kiwify_row


class _ApiError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


def test_error_classification_by_code_and_message() -> None:
    assert db_helpers.is_transient_db_error(_ApiError("canceling statement", "57014"))
    assert db_helpers.is_transient_db_error(Exception("Server disconnected without sending a response"))
    assert not db_helpers.is_transient_db_error(_ApiError("duplicate key", "23505"))

    missing = _ApiError('relation "public.evolution_instances" does not exist', "42P01")
    assert db_helpers.is_missing_table_or_schema_error(missing, "evolution_instances")
    assert not db_helpers.is_missing_table_or_schema_error(missing, "kiwify")

    assert db_helpers.is_missing_column_error(_ApiError("Could not find the 'evolution_last_event' column", "PGRST204"))
    assert db_helpers.is_supabase_not_configured_error(RuntimeError("Supabase não configurado (SUPABASE_URL)."))


def test_transient_errors_retried_outside_event_loop(monkeypatch) -> None:
    monkeypatch.setattr(db_helpers.time, "sleep", lambda _s: None)
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise Exception("503 Service Unavailable")
        return "ok"

    assert db_helpers.db_call_with_retry("test.flaky", flaky) == "ok"
    assert len(calls) == 3


def test_permanent_errors_are_not_retried() -> None:
    calls = []

    def broken():
        calls.append(1)
        raise _ApiError("duplicate key", "23505")

    with pytest.raises(_ApiError):
        db_helpers.db_call_with_retry("test.broken", broken)
    assert len(calls) == 1


@pytest.mark.anyio
async def test_single_attempt_inside_event_loop() -> None:
    calls = []

    def flaky():
        calls.append(1)
        raise Exception("timed out")

    with pytest.raises(Exception):
        db_helpers.db_call_with_retry("test.loop", flaky)
    assert len(calls) == 1


def test_missing_column_on_update_is_logged_and_raised(caplog) -> None:
    db = FakeSupabase({KIWIFY_TABLE: [kiwify_row("u1", "shop1")]})

    def fail_write(*_args):
        raise _ApiError("Could not find the 'evolution_last_event' column of 'kiwify'", "PGRST204")

    db.fail_write = fail_write
    with caplog.at_level(logging.ERROR), pytest.raises(_ApiError):
        ConnectionStore(db).update_record("u1", {"last_event": {"event": "x"}})

    assert "setup_supabase" in caplog.text
