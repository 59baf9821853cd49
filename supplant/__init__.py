"""
supplant: temporarily replace a Kubernetes service with your local machine.

Submodules:
    - config: configuration model and YAML file handling
    - ports: named-port resolution and local port allocation
    - k8s: thin helpers over the Kubernetes CoreV1Api
    - ledger: ordered undo actions drained at teardown
    - tunnel: port forwards and substituted routes behind one handle
    - substitution: snapshot, mutate, and restore a service
    - lifecycle: setup, readiness, active wait, and teardown of a run
    - cli: the ``supplant`` command
"""

__version__ = "0.4.0"

# Re-export commonly used items for convenience
from supplant.config import (
    Config,
    ExternalAccessSpec,
    ExternalPortMapping,
    PortMapping,
    SubstitutionSpec,
    load_config,
)

from supplant.errors import (
    ConfigInvalid,
    LookupFailed,
    NoPodFound,
    NoSelector,
    NothingToDo,
    PortMismatch,
    PortNotFound,
    RestoreFailed,
    ServiceNotFound,
    SetupFailed,
    SupplantError,
    TunnelSetupFailed,
)

from supplant.ledger import RestorationLedger
from supplant.lifecycle import Coordinator, SetupResult
from supplant.ports import PortResolver, allocate_local_port
from supplant.substitution import ServiceSnapshot, SubstitutionEngine
from supplant.tunnel import PortForward, PortPair, TunnelHandle, TunnelManager

__all__ = [
    '__version__',
    # config
    'Config',
    'ExternalAccessSpec',
    'ExternalPortMapping',
    'PortMapping',
    'SubstitutionSpec',
    'load_config',
    # errors
    'ConfigInvalid',
    'LookupFailed',
    'NoPodFound',
    'NoSelector',
    'NothingToDo',
    'PortMismatch',
    'PortNotFound',
    'RestoreFailed',
    'ServiceNotFound',
    'SetupFailed',
    'SupplantError',
    'TunnelSetupFailed',
    # core
    'RestorationLedger',
    'Coordinator',
    'SetupResult',
    'PortResolver',
    'allocate_local_port',
    'ServiceSnapshot',
    'SubstitutionEngine',
    'PortForward',
    'PortPair',
    'TunnelHandle',
    'TunnelManager',
]
