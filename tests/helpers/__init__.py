"""
Test helpers package for the supplant test suite.

Submodules:
    - fake_k8s: in-memory CoreV1Api and builders for services and pods
    - fake_tunnel: port-forward transport driven by tests instead of kubectl
"""

# Re-export commonly used items for convenience
from tests.helpers.fake_k8s import (
    FakeCoreV1,
    make_pod,
    make_service,
)

from tests.helpers.fake_tunnel import (
    FakeForward,
    FakeForwarderFactory,
)

__all__ = [
    # fake cluster
    'FakeCoreV1',
    'make_pod',
    'make_service',
    # fake tunnels
    'FakeForward',
    'FakeForwarderFactory',
]
