"""Root conftest: session-scoped testcontainer fixtures.

Neo4j Community Edition and Redis 7 containers are shared across the whole
test session.  They start only when a test requests a store fixture, so
the pure unit tests run without Docker.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import time
from typing import Callable

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from neo4j import AsyncGraphDatabase
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

from orchestramcp.observability import reset_metrics

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parents[1]
_READY_ATTEMPTS = 30

# Local .env opt-ins; variables already in the environment win.
load_dotenv(dotenv_path=_REPO_ROOT / ".env", override=False)

_SUITE_MARKERS = {
    "unit": pytest.mark.unit,
    "integration": pytest.mark.integration,
}


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Mark each test with its suite (``tests/<suite>/...``)."""
    for item in items:
        try:
            parts = Path(str(item.fspath)).resolve().relative_to(_REPO_ROOT).parts
        except ValueError:
            continue
        if len(parts) >= 2 and parts[0] == "tests" and parts[1] in _SUITE_MARKERS:
            item.add_marker(_SUITE_MARKERS[parts[1]])


def _wait_until_ready(name: str, probe: Callable[[], None]) -> None:
    """Call *probe* once a second until it stops raising."""
    for attempt in range(1, _READY_ATTEMPTS + 1):
        try:
            probe()
            return
        except Exception as exc:
            if attempt == _READY_ATTEMPTS:
                raise
            logger.debug(
                "%s not ready (attempt %d/%d): %s", name, attempt, _READY_ATTEMPTS, exc
            )
            time.sleep(1)


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


# ---------------------------------------------------------------------------
# Neo4j
# ---------------------------------------------------------------------------


async def _neo4j_ping(uri: str) -> None:
    driver = AsyncGraphDatabase.driver(uri)
    try:
        await driver.verify_connectivity()
    finally:
        await driver.close()


@pytest.fixture(scope="session")
def neo4j_container():
    """Bolt URI of a session-wide Neo4j Community container."""
    container = (
        DockerContainer("neo4j:community")
        .with_exposed_ports(7687)
        .with_env("NEO4J_AUTH", "none")
    )
    with container as c:
        uri = f"bolt://{c.get_container_host_ip()}:{c.get_exposed_port(7687)}"
        _wait_until_ready("Neo4j", lambda: asyncio.run(_neo4j_ping(uri)))
        yield uri


@pytest.fixture(scope="session")
def _graph_schema_initialized(neo4j_container):
    from orchestramcp.graph.schema import init_graph_schema

    async def _init():
        driver = AsyncGraphDatabase.driver(neo4j_container)
        try:
            await init_graph_schema(driver)
        finally:
            await driver.close()

    asyncio.run(_init())
    return True


@pytest.fixture()
async def neo4j_driver(neo4j_container):
    """Async driver on a wiped database."""
    driver = AsyncGraphDatabase.driver(neo4j_container)
    async with driver.session() as session:
        await session.run("MATCH (n) DETACH DELETE n")
    yield driver
    await driver.close()


@pytest.fixture()
async def graph_store(neo4j_driver, _graph_schema_initialized):
    from orchestramcp.graph.store import KnowledgeGraphStore

    return KnowledgeGraphStore(neo4j_driver)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def redis_container():
    """URL of a session-wide Redis 7 container."""
    container = DockerContainer("redis:7-alpine").with_exposed_ports(6379)
    with container as c:
        host = c.get_container_host_ip()
        port = int(c.get_exposed_port(6379))

        def ping() -> None:
            client = sync_redis.Redis(host=host, port=port)
            try:
                client.ping()
            finally:
                client.close()

        _wait_until_ready("Redis", ping)
        yield f"redis://{host}:{port}"


@pytest.fixture()
async def redis_client(redis_container):
    """Async client on a flushed database."""
    client = Redis.from_url(redis_container)
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture()
async def memory_store(redis_client):
    from orchestramcp.memory.store import MemoryStore

    return MemoryStore(redis_client)
