"""Integration test fixtures using Docker.

Starts Redis and PostgreSQL containers once per session. Tests are skipped
when no Docker daemon is reachable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator
from typing import Any
from urllib.parse import urlparse

import pytest
import pytest_asyncio


def _docker_host(client: Any) -> str:
    """Resolve the host that published container ports are reachable on."""
    base_url = client.api.base_url
    if base_url.startswith(("unix://", "npipe://", "http+docker://")):
        return "localhost"
    return urlparse(base_url).hostname or "localhost"


def _host_port(container: Any, container_port: int) -> int:
    container.reload()
    bindings = container.attrs["NetworkSettings"]["Ports"].get(f"{container_port}/tcp")
    if not bindings:
        raise RuntimeError(f"Port {container_port} not published by {container.short_id}")
    return int(bindings[0]["HostPort"])


@pytest.fixture(scope="session")
def docker_client() -> Iterator[Any]:
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_url(docker_client: Any) -> Iterator[str]:
    """Start a Redis container for the test session."""
    container = docker_client.containers.run(
        "redis:7-alpine", detach=True, ports={"6379/tcp": None}
    )
    try:
        port = _host_port(container, 6379)
        yield f"redis://{_docker_host(docker_client)}:{port}/0"
    finally:
        container.remove(force=True, v=True)


@pytest.fixture(scope="session")
def database_url(docker_client: Any) -> Iterator[str]:
    """Start a PostgreSQL container for the test session."""
    env = {
        "POSTGRES_USER": "cache",
        "POSTGRES_PASSWORD": "cache",
        "POSTGRES_DB": "cache",
    }
    container = docker_client.containers.run(
        "postgres:16-alpine", detach=True, environment=env, ports={"5432/tcp": None}
    )
    try:
        port = _host_port(container, 5432)
        yield f"postgresql+asyncpg://cache:cache@{_docker_host(docker_client)}:{port}/cache"
    finally:
        container.remove(force=True, v=True)


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[Any]:
    """Create a Redis client for tests."""
    import redis.asyncio as redis

    client = redis.from_url(redis_url, decode_responses=False)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


async def _wait_for_redis(client: Any, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)


async def wait_for_engine(engine: Any, timeout: float = 30.0) -> None:
    """Wait for the database engine to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            async with engine.connect():
                return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
