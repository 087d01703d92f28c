"""Tests for the DataLayer container lifecycle."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Settings
from services.data_layer import DataLayer
from utils.exceptions import ConfigurationError, PoolClosedError


def fake_client_factory(role, region, connection_id):
    client = MagicMock(name=connection_id)
    client.aclose = AsyncMock()
    return client


class TestDataLayer:

    @pytest.mark.asyncio
    async def test_requires_supabase_url_without_client_factory(self):
        with pytest.raises(ConfigurationError):
            await DataLayer.create(Settings(_env_file=None))

    @pytest.mark.asyncio
    async def test_create_registers_background_tasks(self, settings, backend):
        layer = await DataLayer.create(
            settings,
            executor=backend,
            client_factory=fake_client_factory,
            start_background=False,
        )
        try:
            assert set(layer.scheduler.get_stats()) == {
                "cache_sweep", "pool_health_check", "pool_reap_idle", "metrics_prune",
            }
            assert layer.health()["status"] == "healthy"
        finally:
            await layer.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything_once(self, settings, backend):
        layer = await DataLayer.create(
            settings.model_copy(update={"min_connections": 1}),
            executor=backend,
            client_factory=fake_client_factory,
        )
        assert layer.scheduler.running
        clients = [c.client for c in layer.pool.connections()]
        assert clients

        await layer.shutdown()
        await layer.shutdown()

        assert not layer.scheduler.running
        assert layer.health()["status"] == "unavailable"
        for client in clients:
            client.aclose.assert_awaited_once()
        with pytest.raises(PoolClosedError):
            await layer.pool.acquire("read")

    @pytest.mark.asyncio
    async def test_unhealthy_connection_degrades_health(self, settings, backend):
        layer = await DataLayer.create(
            settings, executor=backend, client_factory=fake_client_factory, start_background=False,
        )
        try:
            conn = await layer.pool.acquire("read")
            layer.pool.mark_unhealthy(conn)
            layer.pool.release(conn)
            assert layer.health()["status"] == "degraded"
        finally:
            await layer.shutdown()

    @pytest.mark.asyncio
    async def test_open_circuit_degrades_health(self, settings, backend):
        layer = await DataLayer.create(
            settings.model_copy(update={"circuit_breaker_threshold": 1}),
            executor=backend,
            client_factory=fake_client_factory,
            start_background=False,
        )
        try:
            breaker = layer.retry_policy.circuit_breaker
            breaker.before_call()
            breaker.record_failure()
            report = layer.health()
            assert report["status"] == "degraded"
            assert report["retry"]["circuit_breaker"]["state"] == "open"
        finally:
            await layer.shutdown()
