"""
Error taxonomy for supplant.

Every failure the orchestrator reports derives from SupplantError so the
command-line layer can map it to an exit status in one place. Raw
kubernetes ApiException objects are translated at the cluster glue boundary
(supplant.k8s) where a status code has a specific meaning here; anything
else propagates untouched.
"""


class SupplantError(Exception):
    """Base class for all supplant failures."""


class ConfigInvalid(SupplantError):
    """Configuration file is missing, malformed, or names invalid values."""


class ServiceNotFound(SupplantError):
    """A service to substitute does not exist in the cluster."""

    def __init__(self, namespace, name):
        super().__init__(f"unable to find service {name} in namespace {namespace}")
        self.namespace = namespace
        self.name = name


class PortMismatch(SupplantError):
    """A configured port does not match any port the live service declares."""

    def __init__(self, namespace, name, port, available):
        super().__init__(
            f"no match found for port {port} in service {namespace}/{name} "
            f"(service declares {sorted(available)})"
        )
        self.port = port
        self.available = available


class NoSelector(SupplantError):
    """Service has no selector, so there is no traffic to redirect."""

    def __init__(self, namespace, name):
        super().__init__(f"service {namespace}/{name} has no selector and cannot be substituted")


class PortNotFound(SupplantError):
    """No backing pod exposes the requested named port."""

    def __init__(self, namespace, name, port_name):
        super().__init__(f"unable to find named port {port_name} for service {namespace}/{name}")
        self.port_name = port_name


class LookupFailed(SupplantError):
    """Querying the pods behind a service failed."""


class NoPodFound(SupplantError):
    """No running pod backs the service a tunnel should attach to."""


class TunnelSetupFailed(SupplantError):
    """The tunnel transport could not be started or died before becoming ready."""


class NothingToDo(SupplantError):
    """No enabled entry produced a substitution or a tunnel."""


class RestoreFailed(SupplantError):
    """An individual undo action failed during teardown."""


class SetupFailed(SupplantError):
    """A setup step failed while running in fail-fast mode.

    The original failure is available as ``__cause__`` and ``entry`` names the
    configuration entry being processed.
    """

    def __init__(self, entry, cause):
        super().__init__(f"setup failed for {entry}: {cause}")
        self.entry = entry
