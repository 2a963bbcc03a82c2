from __future__ import annotations

import copy

import pytest

from affiliate_backend.connection.records import INSTANCE_COLUMN


@pytest.fixture
def anyio_backend():
    return "asyncio"


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


class _Query:
    """Chainable subset of the PostgREST builder backed by in-memory rows."""

    def __init__(self, db: "FakeSupabase", name: str):
        self._db = db
        self._name = name
        self._filters = []
        self._negate = False
        self._op = ("select", None, None)
        self._limit = None
        self._order = None

    @property
    def not_(self):
        self._negate = True
        return self

    def _add(self, pred):
        negate, self._negate = self._negate, False
        self._filters.append((lambda r: not pred(r)) if negate else pred)
        return self

    def select(self, *_args, **_kwargs):
        self._op = ("select", None, None)
        return self

    def eq(self, field, value):
        return self._add(lambda r: r.get(field) == value)

    def is_(self, field, value):
        assert value == "null"
        return self._add(lambda r: r.get(field) is None)

    def in_(self, field, values):
        values = list(values)
        return self._add(lambda r: r.get(field) in values)

    def limit(self, n):
        self._limit = n
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def insert(self, data):
        self._op = ("insert", data, None)
        return self

    def update(self, data):
        self._op = ("update", data, None)
        return self

    def upsert(self, data, on_conflict=""):
        self._op = ("upsert", data, on_conflict)
        return self

    def execute(self):
        kind, payload, on_conflict = self._op
        rows = self._db.tables.setdefault(self._name, [])
        if kind == "select":
            self._db.reads.append(self._name)
            matched = [r for r in rows if all(f(r) for f in self._filters)]
            if self._order:
                column, desc = self._order
                matched.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
            if self._limit is not None:
                matched = matched[: self._limit]
            return _Result(copy.deepcopy(matched))

        self._db.writes.append((self._name, kind, copy.deepcopy(payload)))
        if self._db.fail_write is not None:
            self._db.fail_write(self._name, kind, payload)
        if kind == "insert":
            new_rows = payload if isinstance(payload, list) else [payload]
            rows.extend(copy.deepcopy(new_rows))
            return _Result(copy.deepcopy(new_rows))
        if kind == "update":
            matched = [r for r in rows if all(f(r) for f in self._filters)]
            for r in matched:
                r.update(copy.deepcopy(payload))
            return _Result(copy.deepcopy(matched))
        keys = [k.strip() for k in (on_conflict or "").split(",") if k.strip()]
        for r in rows:
            if keys and all(r.get(k) == payload.get(k) for k in keys):
                r.update(copy.deepcopy(payload))
                return _Result([copy.deepcopy(r)])
        rows.append(copy.deepcopy(payload))
        return _Result([copy.deepcopy(payload)])


class FakeSupabase:
    def __init__(self, tables=None):
        self.tables = {k: [dict(r) for r in v] for k, v in (tables or {}).items()}
        self.writes = []
        self.reads = []
        self.fail_write = None

    def table(self, name):
        return _Query(self, name)

    def writes_to(self, table, kind=None):
        return [w for w in self.writes if w[0] == table and (kind is None or w[1] == kind)]

    def row(self, table, **match):
        for r in self.tables.get(table, []):
            if all(r.get(k) == v for k, v in match.items()):
                return r
        return None


def kiwify_row(user_id, instance_name=None, **extra):
    row = {
        "user_id": user_id,
        "email": f"{user_id}@example.com",
        INSTANCE_COLUMN: instance_name,
        "is_connected": False,
        "connected_at": None,
        "disconnected_at": None,
    }
    row.update(extra)
    return row


@pytest.fixture
def evolution_env(monkeypatch):
    monkeypatch.setenv("EVOLUTION_API_BASE_URL", "https://evo.test")
    monkeypatch.setenv("EVOLUTION_API_KEY", "secret-key")
    monkeypatch.setenv("EVOLUTION_WEBHOOK_BASE_URL", "https://backend.test")
    monkeypatch.setenv("SUPABASE_JWT_SECRET", "test-jwt-secret")
    monkeypatch.delenv("EVOLUTION_CONFIG_INLINE", raising=False)
    monkeypatch.delenv("EVOLUTION_CONFIG", raising=False)
    monkeypatch.delenv("EVOLUTION_WEBHOOK_SECRET", raising=False)
