"""Configuration model: parsing, validation, templates, and clean"""
import pytest
import yaml

from supplant.config import (
    Config,
    ExternalAccessSpec,
    ExternalPortMapping,
    PortMapping,
    SubstitutionSpec,
    clean_config,
    config_from_services,
    expose_all_config,
    load_config,
    parse_config,
    save_config,
)
from supplant.errors import ConfigInvalid
from supplant.ports import PortResolver
from tests.helpers.fake_k8s import make_pod, make_service


SAMPLE = """\
supplant:
- name: api
  namespace: ns
  enabled: true
  ports:
  - name: http
    protocol: TCP
    port: 80
    localport: 0
- name: legacy
  namespace: ns
  enabled: false
  ports:
  - port: not-a-number
external:
- name: db
  namespace: ns
  enabled: true
  ports:
  - name: pg
    protocol: TCP
    targetport: pg
    localport: 15432
"""


@pytest.mark.quick
def test_load_sample_file(tmp_path):
    """Enabled and disabled entries are read with the lower-cased field names."""
    path = tmp_path / "supplant.yml"
    path.write_text(SAMPLE)

    cfg = load_config(path)

    assert [s.name for s in cfg.supplant] == ["api", "legacy"]
    assert cfg.supplant[0].ports == [PortMapping(remote_port=80, local_port=0, name="http", protocol="TCP")]
    assert [s.name for s in cfg.enabled_substitutions()] == ["api"]
    assert cfg.external[0].ports[0].target_port == "pg"
    assert cfg.external[0].ports[0].local_port == 15432


@pytest.mark.quick
def test_disabled_entries_are_not_validated():
    cfg = parse_config({"supplant": [{"name": "x", "enabled": False, "ports": [{"port": "bogus"}]}]})
    assert cfg.enabled_substitutions() == []


@pytest.mark.quick
def test_disabled_entry_with_malformed_ports_is_kept_inert():
    cfg = parse_config({
        "supplant": [{"name": "api", "namespace": "ns", "enabled": False, "ports": "80"}],
        "external": [{"name": "db", "namespace": "ns", "enabled": False, "ports": {"targetport": 5432}}],
    })

    assert cfg.supplant[0].ports == [] and cfg.external[0].ports == []
    assert cfg.enabled_substitutions() == [] and cfg.enabled_external() == []

    with pytest.raises(ConfigInvalid, match="ports must be a list"):
        parse_config({"supplant": [{"name": "api", "namespace": "ns", "enabled": True, "ports": "80"}]})


@pytest.mark.quick
def test_empty_document_is_an_empty_config():
    cfg = parse_config(None)
    assert cfg.supplant == [] and cfg.external == []


@pytest.mark.quick
@pytest.mark.parametrize("document, fragment", [
    (["not", "a", "mapping"], "must be a mapping"),
    ({"supplant": {"name": "api"}}, "'supplant' must be a list"),
    ({"supplant": [{"name": "api", "enabled": True, "ports": [{"port": 80}]}]}, "name and namespace"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": True}]}, "at least one port"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": True, "ports": [{"port": 70000}]}]}, "out of range"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": True, "ports": [{"port": 0}]}]}, "out of range"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": "yes", "ports": [{"port": 80}]}]}, "true or false"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": True,
                    "ports": [{"port": 53, "protocol": "UDP"}]}]}, "not supported"),
    ({"supplant": [{"name": "api", "namespace": "ns", "enabled": True,
                    "ports": [{"port": 80, "localport": 9000}, {"port": 81, "localport": 9000}]}]}, "more than once"),
    ({"external": [{"name": "db", "namespace": "ns", "enabled": True,
                    "ports": [{"targetport": None}]}]}, "targetport"),
])
def test_invalid_enabled_entries_raise(document, fragment):
    with pytest.raises(ConfigInvalid, match=fragment):
        parse_config(document)


@pytest.mark.quick
def test_unreadable_and_undecodable_files(tmp_path):
    with pytest.raises(ConfigInvalid, match="error opening"):
        load_config(tmp_path / "missing.yml")

    broken = tmp_path / "broken.yml"
    broken.write_text("supplant: [\n")
    with pytest.raises(ConfigInvalid, match="error decoding"):
        load_config(broken)


@pytest.mark.quick
def test_save_then_clean_drops_disabled_entries(tmp_path):
    cfg = Config(
        supplant=[
            SubstitutionSpec("ns", "api", True, [PortMapping(80, 0, "http")]),
            SubstitutionSpec("ns", "web", False, [PortMapping(8080)]),
        ],
        external=[ExternalAccessSpec("ns", "db", False, [ExternalPortMapping(5432)])],
    )
    path = tmp_path / "out.yml"

    save_config(clean_config(cfg), path)
    written = yaml.safe_load(path.read_text())

    assert written == {
        "supplant": [{
            "name": "api",
            "namespace": "ns",
            "enabled": True,
            "ports": [{"name": "http", "protocol": "TCP", "port": 80, "localport": 0}],
        }],
        "external": [],
    }


@pytest.mark.quick
def test_templates_from_live_services(core_v1, api_service, db_service):
    """create emits disabled entries with named target ports resolved to numbers."""
    udp = make_service("ns", "dns", [53], selector={"app": "dns"})
    udp.spec.ports[0].protocol = "UDP"
    services = [api_service, db_service, udp]

    cfg = config_from_services(services, PortResolver(core_v1))

    assert [s.key for s in cfg.supplant] == ["ns/api", "ns/db", "ns/dns"]
    assert all(not s.enabled for s in cfg.supplant + cfg.external)
    assert cfg.supplant[0].ports == [PortMapping(remote_port=80, local_port=0, name="http", protocol="TCP")]
    assert cfg.external[1].ports == [ExternalPortMapping(target_port=5432, local_port=0, name="pg", protocol="TCP")]
    assert cfg.supplant[2].ports == []


@pytest.mark.quick
def test_templates_skip_unresolvable_named_ports(core_v1):
    core_v1.add_pod(make_pod("ns", "w-1", {"app": "w"}, container_ports=[("metrics", 9100)]))
    service = core_v1.add_service(make_service("ns", "w", [("web", 80, "web"), ("m", 9100, "metrics")], selector={"app": "w"}))

    cfg = config_from_services([service], PortResolver(core_v1))

    assert [p.target_port for p in cfg.external[0].ports] == [9100]


@pytest.mark.quick
def test_expose_all_only_selector_backed_services(core_v1, api_service):
    headless = core_v1.add_service(make_service("ns", "manual", [8000]))

    cfg = expose_all_config([api_service, headless], PortResolver(core_v1))

    assert [s.key for s in cfg.external] == ["ns/api"]
    assert cfg.external[0].enabled
    assert cfg.external[0].ports[0].target_port == 8080
