"""Port resolution and local port allocation."""
import logging
import socket

from kubernetes.client.rest import ApiException

from supplant.errors import LookupFailed, PortNotFound

logger = logging.getLogger(__name__)


def format_selector(selector):
    """Render a selector mapping as a label selector string (``k=v,k2=v2``)."""
    return ",".join(f"{k}={v}" for k, v in sorted((selector or {}).items()))


def is_numeric_port(port_ref):
    if isinstance(port_ref, bool):
        return False
    if isinstance(port_ref, int):
        return True
    return isinstance(port_ref, str) and port_ref.isdigit()


class PortResolver:
    """Resolves symbolic target ports against a service's backing pods.

    Named container ports are collected once per service, keyed by
    (namespace, name), and reused for the rest of the process. A service
    is assumed not to change its named-port mapping mid-run.
    """

    def __init__(self, core_v1):
        self.core_v1 = core_v1
        self._cache = {}

    def resolve(self, service, port_ref):
        """
        Resolve a target port reference to a numeric pod port.

        Args:
            service: kubernetes V1Service the port belongs to
            port_ref: Numeric port (returned unchanged, no I/O) or a port name

        Returns:
            int: Numeric container port

        Raises:
            PortNotFound: If no backing pod declares the named port
            LookupFailed: If listing the backing pods fails
        """
        if is_numeric_port(port_ref):
            return int(port_ref)

        namespace = service.metadata.namespace
        name = service.metadata.name
        key = (namespace, name)
        if key not in self._cache:
            self._cache[key] = self._named_ports(service)

        named = self._cache[key]
        if port_ref not in named:
            raise PortNotFound(namespace, name, port_ref)
        return named[port_ref]

    def _named_ports(self, service):
        namespace = service.metadata.namespace
        selector = format_selector(service.spec.selector)
        if not selector:
            # Without a selector there are no backing pods to inspect.
            return {}

        try:
            pods = self.core_v1.list_namespaced_pod(namespace=namespace, label_selector=selector)
        except ApiException as e:
            raise LookupFailed(
                f"error looking up pods for service {namespace}/{service.metadata.name}: {e.reason}"
            ) from e

        named = {}
        for pod in pods.items:
            for container in pod.spec.containers or []:
                for cport in container.ports or []:
                    if cport.name and cport.name not in named:
                        named[cport.name] = cport.container_port
        logger.debug(f"Named ports for {namespace}/{service.metadata.name}: {named}")
        return named


def allocate_local_port(host=""):
    """
    Ask the OS for a free TCP port.

    The socket is closed before returning, so the port is only guaranteed
    free at that moment; it is reported to the operator right away so the
    local service can bind it.

    Args:
        host: Address to bind while probing (default: all interfaces)

    Returns:
        int: Port number assigned by the OS
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]
