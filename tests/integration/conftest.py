# tests/integration/conftest.py — v8
"""Shared fixtures for integration tests.

SQLite-backed tests need nothing external. The Redis fixture starts a
container through testcontainers and is skipped when no Docker daemon is
reachable.

Container networking:
- Uses DockerContainer directly with bridge network IP + internal port
- Required for devcontainer with docker-outside-of-docker (socket mount)
"""

from __future__ import annotations

import logging
import time
import uuid

import pytest

from geocopy.cache.cache_factory import create_tiered_cache
from geocopy.config.settings import Settings

logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line("markers", "redis: marks tests requiring Redis container")


# =====================================================================
#  DEVCONTAINER NETWORKING HELPERS
# =====================================================================

def _get_container_bridge_ip(container, max_attempts: int = 10) -> str:
    """Get container bridge network IP with retries."""
    for attempt in range(max_attempts):
        try:
            wrapped = container.get_wrapped_container()
            wrapped.reload()
            networks = wrapped.attrs.get("NetworkSettings", {}).get("Networks", {})
            for net_name, net_info in networks.items():
                ip = net_info.get("IPAddress", "")
                if ip:
                    logger.info(
                        "Container %s IP: %s (network: %s, attempt %d)",
                        wrapped.short_id, ip, net_name, attempt + 1,
                    )
                    return ip
        except Exception as e:
            logger.debug("Error getting IP (attempt %d): %s", attempt + 1, e)
        time.sleep(0.5)

    raise RuntimeError(
        f"Could not obtain container bridge IP after {max_attempts} attempts"
    )


def _docker_available() -> bool:
    """Check if Docker daemon is reachable."""
    try:
        import docker
        client = docker.from_env()
        client.ping()
        return True
    except Exception:
        return False


# =====================================================================
#  SQLITE-BACKED CACHE
# =====================================================================

@pytest.fixture
def sqlite_settings(tmp_path) -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        cache_l2_backend="sqlite",
        cache_root=tmp_path / "cache",
        retry_initial_delay_ms=1,
        retry_max_delay_ms=5,
    )


@pytest.fixture
def make_sqlite_cache(sqlite_settings):
    """Factory for TieredCaches sharing one SQLite file (one per 'process')."""
    caches = []

    def _make():
        cache = create_tiered_cache(sqlite_settings)
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        cache.l2.close()


# =====================================================================
#  REDIS CONTAINER
# =====================================================================

REDIS_IMAGE = "redis:7-alpine"
REDIS_INTERNAL_PORT = 6379


@pytest.fixture(scope="session")
def redis_container():
    if not _docker_available():
        pytest.skip("Docker not available")

    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs

    container = DockerContainer(REDIS_IMAGE).with_exposed_ports(REDIS_INTERNAL_PORT)
    container.start()
    wait_for_logs(container, predicate=r"Ready to accept connections", timeout=30)

    ip = _get_container_bridge_ip(container)
    logger.info("Redis ready at %s:%d", ip, REDIS_INTERNAL_PORT)
    yield f"redis://{ip}:{REDIS_INTERNAL_PORT}/0"
    container.stop()


@pytest.fixture
def redis_store(redis_container):
    from geocopy.cache.redis_store import RedisCacheStore

    store = RedisCacheStore(redis_url=redis_container)
    yield store
    store._client.flushdb()
    store.close()


@pytest.fixture
def unique_product() -> str:
    return f"Product {uuid.uuid4().hex[:8]}"
