"""
Configuration model for supplant.

A configuration file lists the services to substitute (`supplant`) and the
services to merely tunnel to (`external`). Files are produced by
`supplant config create`, edited by hand, and read once at startup; the
orchestrator never writes them back.

Field names match the lower-cased keys written by earlier releases:

    supplant:
    - name: api
      namespace: default
      enabled: true
      ports:
      - name: http
        protocol: TCP
        port: 80
        localport: 0
    external:
    - name: db
      namespace: default
      enabled: true
      ports:
      - name: pg
        protocol: TCP
        targetport: 5432
        localport: 0
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml

from supplant.constants import MAX_PORT, MIN_PORT, SUPPORTED_PROTOCOLS
from supplant.errors import ConfigInvalid, SupplantError

logger = logging.getLogger(__name__)


# =============================================================================
# MODEL
# =============================================================================

@dataclass
class PortMapping:
    """A service port taken over by the local machine.

    ``local_port`` of 0 means "allocate any free port at setup time"; the
    substitution engine writes the allocated value back onto the mapping.
    """
    remote_port: int
    local_port: int = 0
    name: str = ""
    protocol: str = "TCP"


@dataclass
class ExternalPortMapping:
    """A pod port made reachable on the local machine through a tunnel.

    ``target_port`` is normally numeric; a string names a container port
    that is resolved against the backing pods at setup time.
    """
    target_port: Union[int, str]
    local_port: int = 0
    name: str = ""
    protocol: str = "TCP"


@dataclass
class SubstitutionSpec:
    namespace: str
    name: str
    enabled: bool = False
    ports: list[PortMapping] = field(default_factory=list)

    @property
    def key(self):
        return f"{self.namespace}/{self.name}"


@dataclass
class ExternalAccessSpec:
    namespace: str
    name: str
    enabled: bool = False
    ports: list[ExternalPortMapping] = field(default_factory=list)

    @property
    def key(self):
        return f"{self.namespace}/{self.name}"


@dataclass
class Config:
    supplant: list[SubstitutionSpec] = field(default_factory=list)
    external: list[ExternalAccessSpec] = field(default_factory=list)

    def enabled_substitutions(self):
        return [spec for spec in self.supplant if spec.enabled]

    def enabled_external(self):
        return [spec for spec in self.external if spec.enabled]


# =============================================================================
# PARSING
# =============================================================================

def _entry_label(section, index, raw):
    if isinstance(raw, dict) and raw.get("name"):
        return f"{section}[{index}] ({raw.get('namespace', '?')}/{raw['name']})"
    return f"{section}[{index}]"


def _as_port(value, what, label, allow_zero):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigInvalid(f"{label}: {what} must be an integer, got {value!r}")
    low = 0 if allow_zero else MIN_PORT
    if value < low or value > MAX_PORT:
        raise ConfigInvalid(f"{label}: {what} {value} is out of range")
    return value


def _as_protocol(value, label):
    protocol = str(value or "TCP").upper()
    if protocol not in SUPPORTED_PROTOCOLS:
        raise ConfigInvalid(f"{label}: protocol {protocol} is not supported (only {', '.join(SUPPORTED_PROTOCOLS)})")
    return protocol


def _check_local_ports(ports, label):
    seen = set()
    for port in ports:
        if port.local_port and port.local_port in seen:
            raise ConfigInvalid(f"{label}: local port {port.local_port} is used more than once")
        seen.add(port.local_port)


def _parse_entry_header(raw, label):
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"{label}: entry must be a mapping")
    enabled = raw.get("enabled", False)
    if not isinstance(enabled, bool):
        raise ConfigInvalid(f"{label}: enabled must be true or false")
    ports = raw.get("ports") or []
    if not isinstance(ports, list):
        if enabled:
            raise ConfigInvalid(f"{label}: ports must be a list")
        ports = []
    return enabled, ports


def _parse_substitution(raw, label):
    enabled, raw_ports = _parse_entry_header(raw, label)
    name = raw.get("name") or ""
    namespace = raw.get("namespace") or ""
    if not enabled:
        # Disabled entries are inert: keep whatever is there without judging it.
        ports = [
            PortMapping(
                remote_port=p.get("port", 0),
                local_port=p.get("localport", 0),
                name=p.get("name") or "",
                protocol=p.get("protocol") or "TCP",
            )
            for p in raw_ports if isinstance(p, dict)
        ]
        return SubstitutionSpec(namespace=namespace, name=name, enabled=False, ports=ports)

    if not name or not namespace:
        raise ConfigInvalid(f"{label}: name and namespace are required")
    if not raw_ports:
        raise ConfigInvalid(f"{label}: at least one port is required")

    ports = []
    for raw_port in raw_ports:
        if not isinstance(raw_port, dict):
            raise ConfigInvalid(f"{label}: port entries must be mappings")
        ports.append(PortMapping(
            remote_port=_as_port(raw_port.get("port"), "port", label, allow_zero=False),
            local_port=_as_port(raw_port.get("localport", 0), "localport", label, allow_zero=True),
            name=str(raw_port.get("name") or ""),
            protocol=_as_protocol(raw_port.get("protocol"), label),
        ))
    _check_local_ports(ports, label)
    return SubstitutionSpec(namespace=namespace, name=name, enabled=True, ports=ports)


def _parse_external(raw, label):
    enabled, raw_ports = _parse_entry_header(raw, label)
    name = raw.get("name") or ""
    namespace = raw.get("namespace") or ""
    if not enabled:
        ports = [
            ExternalPortMapping(
                target_port=p.get("targetport", 0),
                local_port=p.get("localport", 0),
                name=p.get("name") or "",
                protocol=p.get("protocol") or "TCP",
            )
            for p in raw_ports if isinstance(p, dict)
        ]
        return ExternalAccessSpec(namespace=namespace, name=name, enabled=False, ports=ports)

    if not name or not namespace:
        raise ConfigInvalid(f"{label}: name and namespace are required")
    if not raw_ports:
        raise ConfigInvalid(f"{label}: at least one port is required")

    ports = []
    for raw_port in raw_ports:
        if not isinstance(raw_port, dict):
            raise ConfigInvalid(f"{label}: port entries must be mappings")
        target = raw_port.get("targetport")
        if isinstance(target, str) and target and not target.isdigit():
            target_port = target
        else:
            if isinstance(target, str) and target.isdigit():
                target = int(target)
            target_port = _as_port(target, "targetport", label, allow_zero=False)
        ports.append(ExternalPortMapping(
            target_port=target_port,
            local_port=_as_port(raw_port.get("localport", 0), "localport", label, allow_zero=True),
            name=str(raw_port.get("name") or ""),
            protocol=_as_protocol(raw_port.get("protocol"), label),
        ))
    _check_local_ports(ports, label)
    return ExternalAccessSpec(namespace=namespace, name=name, enabled=True, ports=ports)


def parse_config(data):
    """
    Build a Config from the decoded YAML document.

    Args:
        data: Object returned by yaml.safe_load (None for an empty file)

    Returns:
        Config: Parsed configuration

    Raises:
        ConfigInvalid: If the document or any enabled entry is malformed
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigInvalid("configuration must be a mapping with 'supplant' and 'external' lists")

    unknown = set(data) - {"supplant", "external"}
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {', '.join(sorted(map(str, unknown)))}")

    cfg = Config()
    for section, parser, target in (
        ("supplant", _parse_substitution, cfg.supplant),
        ("external", _parse_external, cfg.external),
    ):
        entries = data.get(section) or []
        if not isinstance(entries, list):
            raise ConfigInvalid(f"'{section}' must be a list")
        for index, raw in enumerate(entries):
            target.append(parser(raw, _entry_label(section, index, raw)))
    return cfg


def load_config(path):
    """
    Read and validate a configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Config: Parsed configuration

    Raises:
        ConfigInvalid: If the file cannot be read, decoded, or validated
    """
    path = Path(path)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigInvalid(f"error opening {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigInvalid(f"error decoding {path}: {e}") from e
    return parse_config(data)


# =============================================================================
# SERIALIZATION
# =============================================================================

def _port_to_dict(port):
    out = {}
    if port.name:
        out["name"] = port.name
    out["protocol"] = port.protocol
    if isinstance(port, PortMapping):
        out["port"] = port.remote_port
    else:
        out["targetport"] = port.target_port
    out["localport"] = port.local_port
    return out


def _entry_to_dict(spec):
    return {
        "name": spec.name,
        "namespace": spec.namespace,
        "enabled": spec.enabled,
        "ports": [_port_to_dict(p) for p in spec.ports],
    }


def config_to_dict(cfg):
    return {
        "supplant": [_entry_to_dict(s) for s in cfg.supplant],
        "external": [_entry_to_dict(s) for s in cfg.external],
    }


def save_config(cfg, path):
    """
    Write a configuration file.

    Args:
        cfg: Config to serialize
        path: Destination path (overwritten)
    """
    path = Path(path)
    with open(path, 'w') as f:
        yaml.safe_dump(config_to_dict(cfg), f, default_flow_style=False, sort_keys=False)
    logger.info(f"✓ Wrote {len(cfg.supplant)} supplant and {len(cfg.external)} external entries to {path}")


def clean_config(cfg):
    """Return a copy of ``cfg`` with every disabled entry removed."""
    return Config(supplant=cfg.enabled_substitutions(), external=cfg.enabled_external())


# =============================================================================
# TEMPLATES FROM LIVE SERVICES
# =============================================================================

def _tcp_ports(service):
    # Port forwarding is stream-only, so UDP/SCTP ports are left out of templates.
    return [p for p in (service.spec.ports or []) if (p.protocol or "TCP") in SUPPORTED_PROTOCOLS]


def substitution_from_service(service):
    """Map a live V1Service to a disabled SubstitutionSpec template."""
    return SubstitutionSpec(
        namespace=service.metadata.namespace,
        name=service.metadata.name,
        enabled=False,
        ports=[
            PortMapping(remote_port=p.port, local_port=0, name=p.name or "", protocol=p.protocol or "TCP")
            for p in _tcp_ports(service)
        ],
    )


def external_from_service(service, resolver):
    """
    Map a live V1Service to a disabled ExternalAccessSpec template.

    Args:
        service: kubernetes V1Service
        resolver: PortResolver used for named target ports

    Returns:
        ExternalAccessSpec: Template with numeric target ports; ports whose
        named target cannot be resolved are skipped
    """
    ports = []
    for p in _tcp_ports(service):
        target = p.target_port if p.target_port is not None else p.port
        try:
            target_port = resolver.resolve(service, target)
        except SupplantError as e:
            logger.error(f"{e}; skipping port {p.port} of {service.metadata.namespace}/{service.metadata.name}")
            continue
        ports.append(ExternalPortMapping(target_port=target_port, local_port=0, name=p.name or "", protocol=p.protocol or "TCP"))
    return ExternalAccessSpec(
        namespace=service.metadata.namespace,
        name=service.metadata.name,
        enabled=False,
        ports=ports,
    )


def config_from_services(services, resolver):
    """
    Build a template configuration covering every given service.

    Args:
        services: Iterable of kubernetes V1Service objects
        resolver: PortResolver used for named target ports

    Returns:
        Config: One disabled substitution and one disabled external entry per service
    """
    cfg = Config()
    for service in services:
        cfg.supplant.append(substitution_from_service(service))
        cfg.external.append(external_from_service(service, resolver))
    return cfg


def expose_all_config(services, resolver, namespace: Optional[str] = None):
    """
    Build an enabled external-access configuration for every selector-backed service.

    Services without a selector cannot be port forwarded and are skipped, as
    are services with no TCP port left after named ports are resolved.
    """
    cfg = Config()
    for service in services:
        if namespace and service.metadata.namespace != namespace:
            continue
        if not service.spec.selector:
            continue
        spec = external_from_service(service, resolver)
        if not spec.ports:
            continue
        spec.enabled = True
        cfg.external.append(spec)
    return cfg
