"""
Shared pytest fixtures for data layer testing.
Fake clock, fake pooled clients and an in-memory PostgREST backend for the robots table.
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Set
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import BackendQuery, BackendResult
from main import create_app
from services.data_layer import DataLayer
from utils.connection_pool import ConnectionRole, PooledConnection
from utils.exceptions import QueryValidationError, TransportError
from utils.retry_policy import RetryPolicy


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000


async def no_sleep(seconds: float) -> None:
    return None


def fake_client_factory(role: ConnectionRole, region: str, connection_id: str) -> MagicMock:
    client = MagicMock(name=connection_id)
    client.aclose = AsyncMock()
    return client


def _text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _matches(row: Dict[str, Any], column: str, expression: str) -> bool:
    op, _, raw = expression.partition(".")
    value = row.get(column)
    if op == "is":
        return _text(value) == raw
    if op == "in":
        return _text(value) in raw.strip("()").split(",")
    if op in ("like", "ilike"):
        pattern = re.escape(raw).replace(r"\*", ".*")
        flags = re.IGNORECASE if op == "ilike" else 0
        return value is not None and re.fullmatch(pattern, str(value), flags) is not None
    if value is None:
        return False
    text = _text(value)
    return {
        "eq": text == raw,
        "neq": text != raw,
        "gt": text > raw,
        "gte": text >= raw,
        "lt": text < raw,
        "lte": text <= raw,
    }[op]


class InMemoryBackend:
    """Executor that interprets BackendQuery params against in-memory tables."""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {"robots": []}
        self.calls: List[BackendQuery] = []
        self.reject_names: Set[str] = set()
        self.transport_failures = 0
        self.drop_after_commit = 0
        self._ticks = 0

    def _timestamp(self) -> str:
        self._ticks += 1
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return (base + timedelta(seconds=self._ticks)).isoformat()

    def seed_robot(self, **fields: Any) -> Dict[str, Any]:
        row = self._new_row({"name": "Seed Robot", "code": "// code", "user_id": str(uuid4()), **fields})
        self.tables["robots"].append(row)
        return dict(row)

    def _new_row(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._timestamp()
        row = {
            "id": str(uuid4()),
            "description": "",
            "strategy_type": "Custom",
            "strategy_params": {},
            "backtest_settings": {},
            "analysis_result": {},
            "chat_history": [],
            "version": 1,
            "is_active": True,
            "is_public": False,
            "view_count": 0,
            "copy_count": 0,
            "deleted_at": None,
            "created_at": now,
            "updated_at": now,
        }
        row.update(data)
        return row

    def _select(self, rows: List[Dict[str, Any]], query: BackendQuery) -> List[Dict[str, Any]]:
        for column, expression in query.params:
            if column in ("select", "order", "limit", "offset"):
                continue
            rows = [row for row in rows if _matches(row, column, expression)]
        return rows

    async def __call__(self, conn: PooledConnection, query: BackendQuery) -> BackendResult:
        self.calls.append(query)
        if self.transport_failures:
            self.transport_failures -= 1
            raise TransportError("upstream returned 503", status_code=503)

        table = self.tables.setdefault(query.table, [])
        params = dict(query.params)

        if query.operation == "insert":
            names = {row.get("name") for row in query.body}
            if names & self.reject_names:
                raise QueryValidationError("robots.insert returned 400: constraint violation")
            created = [self._new_row(dict(row)) for row in query.body]
            table.extend(created)
            if self.drop_after_commit:
                self.drop_after_commit -= 1
                raise TransportError("upstream returned 502 after commit", status_code=502)
            return BackendResult(rows=[dict(row) for row in created])

        matched = self._select(table, query)

        if query.operation == "update":
            for row in matched:
                row.update(query.body)
            return BackendResult(rows=[dict(row) for row in matched])

        if query.operation == "delete":
            for row in matched:
                table.remove(row)
            return BackendResult(rows=[dict(row) for row in matched])

        ordered = list(matched)
        for key in reversed(params.get("order", "").split(",")):
            if not key:
                continue
            column, _, direction = key.partition(".")
            ordered.sort(key=lambda row: _text(row.get(column)), reverse=direction == "desc")

        offset = int(params.get("offset", 0))
        limit = params.get("limit")
        page = ordered[offset:offset + int(limit)] if limit else ordered[offset:]
        return BackendResult(
            rows=[dict(row) for row in page],
            total=len(matched) if query.count else None,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with small timeouts, isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        supabase_url="https://test.supabase.co",
        supabase_anon_key="test-anon-key",
        max_connections=2,
        min_connections=0,
        acquire_timeout_ms=200,
        query_timeout_ms=1000,
        retry_max_attempts=3,
        retry_initial_delay_ms=1,
        retry_max_delay_ms=5,
        batch_size=2,
        log_level="WARNING",
    )


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def app(settings: Settings, backend: InMemoryBackend):
    async def build_data_layer(app_settings: Settings) -> DataLayer:
        return await DataLayer.create(
            app_settings,
            executor=backend,
            client_factory=fake_client_factory,
            retry_policy=RetryPolicy.from_settings(app_settings, sleep=no_sleep),
            start_background=False,
        )

    return create_app(settings, data_layer_factory=build_data_layer)


@pytest.fixture
def client(app):
    """Test client for the FastAPI app; runs the lifespan."""
    with TestClient(app) as test_client:
        yield test_client
