"""Pytest fixtures for the supplant test suite"""
import itertools
import logging

import pytest

from supplant.ledger import RestorationLedger
from supplant.tunnel import TunnelManager
from tests.helpers.fake_k8s import FakeCoreV1, make_pod, make_service
from tests.helpers.fake_tunnel import FakeForwarderFactory

logger = logging.getLogger(__name__)


# =============================================================================
# FAKE CLUSTER FIXTURES
# =============================================================================

@pytest.fixture
def core_v1():
    """In-memory CoreV1Api with no objects."""
    return FakeCoreV1()


@pytest.fixture
def api_service(core_v1):
    """
    Service ns/api with selector app=api and port 80 -> 8080, backed by one pod.

    Returns:
        V1Service: The stored service
    """
    core_v1.add_pod(make_pod("ns", "api-7d9f", {"app": "api"}, container_ports=[("http", 8080)]))
    return core_v1.add_service(make_service("ns", "api", [("http", 80, 8080)], selector={"app": "api"}))


@pytest.fixture
def db_service(core_v1):
    """Service ns/db with a named target port (pg -> 5432), backed by one pod."""
    core_v1.add_pod(make_pod("ns", "db-0", {"app": "db"}, container_ports=[("pg", 5432)]))
    return core_v1.add_service(make_service("ns", "db", [("pg", 5432, "pg")], selector={"app": "db"}))


# =============================================================================
# ORCHESTRATION FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    return RestorationLedger()


@pytest.fixture
def port_allocator():
    """Deterministic stand-in for allocate_local_port (31001, 31002, ...)."""
    counter = itertools.count(31001)
    return lambda: next(counter)


@pytest.fixture
def forwarder():
    """Factory creating fake port-forward transports."""
    return FakeForwarderFactory()


@pytest.fixture
def tunnels(core_v1, forwarder):
    """TunnelManager that never runs kubectl."""
    return TunnelManager(core_v1, forwarder=forwarder)


def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "quick: Quick tests that run in <1 second")
    config.addinivalue_line("markers", "write: Tests that exercise cluster-mutating paths against the fake cluster")
    config.addinivalue_line("markers", "cli: Command-line interface tests")
