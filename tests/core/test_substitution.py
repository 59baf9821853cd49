"""Substitution engine: snapshot, mutate, and restore a live service"""
import pytest
from kubernetes.client.rest import ApiException

from supplant.config import PortMapping, SubstitutionSpec
from supplant.constants import MARKER_KEY, MARKER_VALUE
from supplant.errors import NoSelector, PortMismatch, ServiceNotFound
from supplant.k8s import build_endpoints
from supplant.ledger import DELETE_ENDPOINT, RESTORE_SERVICE
from supplant.substitution import SubstitutionEngine
from tests.helpers.fake_k8s import make_service


EXTERNAL_IP = "192.168.1.50"


@pytest.fixture
def engine(core_v1, ledger, port_allocator):
    return SubstitutionEngine(core_v1, ledger, EXTERNAL_IP, allocate_port=port_allocator)


def api_spec(remote_port=80, local_port=0):
    return SubstitutionSpec("ns", "api", True, [PortMapping(remote_port=remote_port, local_port=local_port)])


@pytest.mark.write
def test_substitute_redirects_service_to_local_port(core_v1, api_service, engine, ledger):
    spec = api_spec()

    pairs = engine.substitute(spec)

    assert spec.ports[0].local_port == 31001
    assert pairs == [(31001, 80)]

    live = core_v1.services[("ns", "api")]
    assert not live.spec.selector
    assert [(p.name, p.port, p.target_port) for p in live.spec.ports] == [("http", 80, 31001)]
    assert live.metadata.annotations[MARKER_KEY] == MARKER_VALUE

    endpoints = core_v1.endpoints[("ns", "api")]
    assert endpoints.metadata.labels == {MARKER_KEY: MARKER_VALUE}
    assert len(endpoints.subsets) == 1
    assert [a.ip for a in endpoints.subsets[0].addresses] == [EXTERNAL_IP]
    assert [(p.name, p.port) for p in endpoints.subsets[0].ports] == [("http", 31001)]

    assert [(a.kind, a.target) for a in ledger] == [(RESTORE_SERVICE, "ns/api"), (DELETE_ENDPOINT, "ns/api")]


@pytest.mark.write
def test_service_is_recreated_not_updated(core_v1, api_service, engine):
    core_v1.calls.clear()

    engine.substitute(api_spec(local_port=9000))

    assert core_v1.mutations() == [
        ("delete_namespaced_service", "ns", "api"),
        ("create_namespaced_service", "ns", "api"),
        ("delete_namespaced_endpoints", "ns", "api"),
        ("create_namespaced_endpoints", "ns", "api"),
    ]


@pytest.mark.write
def test_explicit_local_port_is_kept(core_v1, api_service, engine):
    spec = api_spec(local_port=9000)

    engine.substitute(spec)

    assert spec.ports[0].local_port == 9000
    assert core_v1.services[("ns", "api")].spec.ports[0].target_port == 9000


@pytest.mark.write
def test_restore_puts_back_selector_and_ports(core_v1, api_service, engine, ledger):
    engine.substitute(api_spec())

    outcomes = ledger.unwind()

    assert all(o.ok for o in outcomes)
    restored = core_v1.services[("ns", "api")]
    assert restored.spec.selector == {"app": "api"}
    assert [(p.name, p.port, p.target_port) for p in restored.spec.ports] == [("http", 80, 8080)]
    assert MARKER_KEY not in (restored.metadata.annotations or {})
    assert restored.metadata.uid != api_service.metadata.uid
    assert ("ns", "api") not in core_v1.endpoints


@pytest.mark.write
def test_port_mismatch_mutates_nothing(core_v1, api_service, engine, ledger):
    core_v1.calls.clear()

    with pytest.raises(PortMismatch, match="port 81"):
        engine.substitute(api_spec(remote_port=81))

    assert core_v1.mutations() == []
    assert len(ledger) == 0
    assert core_v1.services[("ns", "api")].spec.selector == {"app": "api"}


@pytest.mark.write
def test_selectorless_service_is_rejected(core_v1, engine, ledger):
    core_v1.add_service(make_service("ns", "api", [80]))

    with pytest.raises(NoSelector):
        engine.substitute(api_spec())

    assert core_v1.mutations() == []
    assert len(ledger) == 0


@pytest.mark.write
def test_missing_service(core_v1, engine, ledger):
    with pytest.raises(ServiceNotFound, match="unable to find service api in namespace ns"):
        engine.substitute(api_spec())
    assert len(ledger) == 0


@pytest.mark.write
def test_ports_are_allocated_before_any_cluster_call(core_v1, ledger):
    seen = []

    def allocate():
        seen.append(list(core_v1.calls))
        return 42000

    engine = SubstitutionEngine(core_v1, ledger, EXTERNAL_IP, allocate_port=allocate)
    with pytest.raises(ServiceNotFound):
        engine.substitute(api_spec())

    assert seen == [[]]


@pytest.mark.write
def test_create_failure_keeps_restore_queued(core_v1, api_service, engine, ledger):
    """Service deleted, recreate fails: the queued restore brings the original back."""
    core_v1.fail("create_namespaced_service", "ns", "api", times=1)

    with pytest.raises(ApiException):
        engine.substitute(api_spec())

    assert ("ns", "api") not in core_v1.services
    assert [a.kind for a in ledger] == [RESTORE_SERVICE]

    ledger.unwind()

    assert core_v1.services[("ns", "api")].spec.selector == {"app": "api"}


@pytest.mark.write
def test_existing_endpoints_are_replaced(core_v1, api_service, engine):
    core_v1.add_endpoints(build_endpoints("ns", "api", "10.0.0.7", [("http", 8080, "TCP")]))

    engine.substitute(api_spec(local_port=9000))

    endpoints = core_v1.endpoints[("ns", "api")]
    assert [a.ip for a in endpoints.subsets[0].addresses] == [EXTERNAL_IP]


@pytest.mark.write
def test_multi_port_service_keeps_names_and_drops_unlisted_ports(core_v1, engine):
    core_v1.add_service(make_service(
        "ns", "web", [("http", 80, 8080), ("https", 443, 8443), ("admin", 9000, 9000)], selector={"app": "web"},
    ))
    spec = SubstitutionSpec("ns", "web", True, [PortMapping(443, 7443), PortMapping(80, 7080)])

    engine.substitute(spec)

    live = core_v1.services[("ns", "web")]
    assert [(p.name, p.port, p.target_port) for p in live.spec.ports] == [("https", 443, 7443), ("http", 80, 7080)]
    ep_ports = core_v1.endpoints[("ns", "web")].subsets[0].ports
    assert [(p.name, p.port) for p in ep_ports] == [("https", 7443), ("http", 7080)]


@pytest.mark.write
def test_headless_service_keeps_cluster_ip_none(core_v1, engine, ledger):
    core_v1.add_service(make_service("ns", "api", [80], selector={"app": "api"}, cluster_ip="None"))

    engine.substitute(api_spec(local_port=9000))
    assert core_v1.services[("ns", "api")].spec.cluster_ip == "None"

    ledger.unwind()
    assert core_v1.services[("ns", "api")].spec.cluster_ip == "None"
