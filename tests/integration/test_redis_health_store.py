"""Integration tests for persisted provider health (requires Docker)."""

from __future__ import annotations

from clawloop.config import GatewayConfig
from clawloop.engine.circuit import RedisHealthStore
from clawloop.engine.gateway import ProviderGateway
from clawloop.errors import ProviderError
from clawloop.errors import ProviderErrorKind
from clawloop.models.provider import HealthState
from clawloop.models.provider import ProviderDescriptor
from tests.helpers.fakes import FakeClock
from tests.helpers.fakes import ScriptedProvider
from tests.helpers.fakes import SleepRecorder


class TestRedisHealthStore:
    async def test_round_trip_clears_probe_flag(self, redis_client):
        store = RedisHealthStore(redis_client, prefix="test")
        await store.save(
            ProviderDescriptor(id="p", health=HealthState.circuit_open, probe_in_flight=True)
        )

        loaded = await store.load()

        assert loaded["p"].health is HealthState.circuit_open
        assert loaded["p"].probe_in_flight is False

    async def test_unreadable_entry_skipped(self, redis_client):
        await redis_client.hset("test:provider_health", "bad", "{oops")
        store = RedisHealthStore(redis_client, prefix="test")
        assert await store.load() == {}

    async def test_open_circuit_survives_restart(self, redis_client):
        clock = FakeClock()
        config = GatewayConfig(max_attempts_per_provider=1, failure_threshold=1, cooldown_seconds=60)
        failing = ScriptedProvider(ProviderError(ProviderErrorKind.TRANSIENT, "503"))
        first = ProviderGateway(
            [("main", 0, failing), ("backup", 1, ScriptedProvider("ok"))],
            config,
            health_store=RedisHealthStore(redis_client, prefix="test"),
            clock=clock,
            sleep=SleepRecorder(),
        )
        await first.complete("hi")
        assert first.descriptor("main").health is HealthState.circuit_open

        restarted_main = ScriptedProvider("ok")
        second = ProviderGateway(
            [("main", 0, restarted_main), ("backup", 1, ScriptedProvider("ok"))],
            config,
            health_store=RedisHealthStore(redis_client, prefix="test"),
            clock=clock,
            sleep=SleepRecorder(),
        )
        await second.restore_health()
        response = await second.complete("hi")

        assert response.provider_id == "backup"
        assert restarted_main.call_count == 0
