"""Shared fixtures: suite markers, metric isolation and a Redis container.

Unit tests never need Docker.  Anything requesting ``redis_client`` is
skipped when no Docker daemon answers.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from testcontainers.core.container import DockerContainer

from clawloop.observability import reset_metrics

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
REDIS_IMAGE = "redis:7-alpine"
REDIS_READY_TIMEOUT_S = 30.0

# Opt-ins such as CLAWLOOP_* variables may come from a local .env file.
load_dotenv(dotenv_path=ROOT / ".env", override=False)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark each test ``unit`` or ``integration`` from its directory."""
    suites = {"unit": pytest.mark.unit, "integration": pytest.mark.integration}
    for item in items:
        try:
            parts = Path(str(item.fspath)).resolve().relative_to(ROOT / "tests").parts
        except ValueError:
            continue
        marker = suites.get(parts[0]) if len(parts) > 1 else None
        if marker is not None:
            item.add_marker(marker)


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def _wait_for_redis(host: str, port: int) -> None:
    client = sync_redis.Redis(host=host, port=port)
    deadline = time.monotonic() + REDIS_READY_TIMEOUT_S
    try:
        while True:
            try:
                client.ping()
                return
            except RedisConnectionError as exc:
                if time.monotonic() >= deadline:
                    raise
                logger.debug("waiting for redis at %s:%d: %s", host, port, exc)
                time.sleep(0.5)
    finally:
        client.close()


@pytest.fixture(scope="session")
def redis_url():
    """URL of a throwaway Redis shared by the whole session."""
    container = DockerContainer(REDIS_IMAGE).with_exposed_ports(6379)
    try:
        container.start()
    except Exception as exc:
        pytest.skip(f"Docker is not available: {exc}")
    try:
        host = container.get_container_host_ip()
        port = int(container.get_exposed_port(6379))
        _wait_for_redis(host, port)
        yield f"redis://{host}:{port}"
    finally:
        container.stop()


@pytest.fixture()
async def redis_client(redis_url):
    """Async client on an emptied database; emptied again afterwards."""
    client = Redis.from_url(redis_url)
    await client.flushdb()
    try:
        yield client
    finally:
        await client.flushdb()
        await client.aclose()
