from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest


def pytest_configure():
    # Ensure project root is on sys.path for the flat top-level modules
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))
    # Set test environment knobs
    os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
    os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
    os.environ.setdefault("GETPROSPECT_API_KEY", "test-getprospect-key")
    os.environ.setdefault("PERPLEXITY_API_KEY", "test-perplexity-key")
    os.environ.setdefault("WEBHOOK_URL", "https://hooks.test/enrich")
    os.environ.setdefault("ROW_DELAY_MS", "0")


def _unescape_like(pattern: str) -> str:
    out = []
    escaped = False
    for ch in pattern:
        if escaped:
            out.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        else:
            out.append(ch)
    return "".join(out)


class FakeQuery:
    """Chainable stand-in for the supabase-py query builder"""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.action = "select"
        self.columns: Optional[List[str]] = None
        self.filters: List[Any] = []
        self.order_by: Optional[tuple] = None
        self.limit_n: Optional[int] = None
        self.payload: Any = None

    def select(self, columns: str = "*"):
        self.action = "select"
        if columns.strip() != "*":
            self.columns = [c.strip() for c in columns.split(",")]
        return self

    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def ilike(self, column, pattern):
        target = _unescape_like(pattern).lower()
        self.filters.append(lambda r: str(r.get(column) or "").lower() == target)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda r: r.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def insert(self, payload):
        self.action = "insert"
        self.payload = payload
        return self

    def upsert(self, payload):
        self.action = "upsert"
        self.payload = payload
        return self

    def update(self, payload):
        self.action = "update"
        self.payload = payload
        return self

    def _matching(self) -> List[Dict[str, Any]]:
        rows = self.db.tables.setdefault(self.table, [])
        return [r for r in rows if all(f(r) for f in self.filters)]

    def execute(self):
        self.db.calls.append((self.table, self.action))
        if self.table in self.db.fail_tables:
            raise RuntimeError(f"{self.table} unavailable")

        rows = self.db.tables.setdefault(self.table, [])
        if self.action in ("insert", "upsert"):
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            saved = []
            for item in items:
                record = dict(item)
                if self.action == "upsert" and "id" in record:
                    rows[:] = [r for r in rows if r.get("id") != record["id"]]
                record.setdefault("id", str(uuid.uuid4()))
                record.setdefault("created_at", self.db.next_timestamp())
                rows.append(record)
                saved.append(dict(record))
            return SimpleNamespace(data=saved)

        if self.action == "update":
            updated = []
            for r in self._matching():
                r.update(self.payload)
                updated.append(dict(r))
            return SimpleNamespace(data=updated)

        result = [dict(r) for r in self._matching()]
        if self.order_by:
            column, desc = self.order_by
            result.sort(key=lambda r: r.get(column) or "", reverse=desc)
        if self.limit_n is not None:
            result = result[: self.limit_n]
        if self.columns:
            result = [{c: r.get(c) for c in self.columns} for r in result]
        return SimpleNamespace(data=result)


class FakeAuth:
    """Stand-in for client.auth"""

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.current = None

    def _response(self, email):
        user = self.users[email]
        user_obj = SimpleNamespace(id=user["id"], email=email, user_metadata={"full_name": user.get("full_name")})
        session = SimpleNamespace(user=user_obj, access_token="access", refresh_token="refresh")
        self.current = session
        return SimpleNamespace(user=user_obj, session=session)

    def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.users:
            raise Exception("User already registered")
        full_name = credentials.get("options", {}).get("data", {}).get("full_name")
        self.users[email] = {"id": str(uuid.uuid4()), "password": credentials["password"], "full_name": full_name}
        return self._response(email)

    def sign_in_with_password(self, credentials):
        user = self.users.get(credentials["email"])
        if not user or user["password"] != credentials["password"]:
            raise Exception("Invalid login credentials")
        return self._response(credentials["email"])

    def sign_out(self):
        self.current = None

    def get_session(self):
        return self.current

    def refresh_session(self):
        if self.current is None:
            raise Exception("No session")
        return SimpleNamespace(user=self.current.user, session=self.current)


class FakeSupabase:
    """In-memory Supabase client"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.fail_tables: set = set()
        self.auth = FakeAuth()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def next_timestamp(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def seed(self, table: str, *records: Dict[str, Any]) -> List[Dict[str, Any]]:
        return FakeQuery(self, table).insert(list(records)).execute().data


@pytest.fixture
def settings():
    from config import Settings
    return Settings(row_delay_ms=0)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def db_client(settings, fake_supabase):
    from database import DatabaseClient
    return DatabaseClient(settings, client=fake_supabase)
