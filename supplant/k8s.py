"""Kubernetes helper functions for services, endpoints, and pods."""
import copy
import logging
import socket

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from supplant.constants import IDENTITY_FIELDS, MARKER_SELECTOR, OUTBOUND_ROUTE_ADDRESS
from supplant.errors import NoPodFound, ServiceNotFound, TunnelSetupFailed
from supplant.ports import format_selector

logger = logging.getLogger(__name__)


# =============================================================================
# CLIENT
# =============================================================================

def load_core_v1(kubeconfig=None, context=None):
    """
    Load Kubernetes configuration and return a CoreV1Api client.

    Args:
        kubeconfig: Path to a kubeconfig file (default: KUBECONFIG or ~/.kube/config)
        context: Context name to use (default: current context)

    Returns:
        CoreV1Api: Configured client
    """
    config.load_kube_config(config_file=kubeconfig, context=context)
    return client.CoreV1Api()


def get_server_version():
    """Return the API server's git version string."""
    return client.VersionApi().get_code().git_version


def get_outbound_ip():
    """
    Determine the address other machines use to reach this one.

    Connecting a UDP socket only selects a route; no packet is sent.

    Returns:
        str: Local address of the outbound interface, or None if there is no route
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(OUTBOUND_ROUTE_ADDRESS)
            return sock.getsockname()[0]
    except OSError as e:
        logger.warning(f"Unable to determine outbound IP: {e}")
        return None


# =============================================================================
# SERVICES
# =============================================================================

def list_services(core_v1, namespace=None):
    """List services in one namespace, or in all namespaces when none is given."""
    if namespace:
        return core_v1.list_namespaced_service(namespace=namespace).items
    return core_v1.list_service_for_all_namespaces().items


def get_service(core_v1, namespace, name):
    """
    Fetch a live service.

    Raises:
        ServiceNotFound: If the service does not exist
        ApiException: For any other API failure
    """
    try:
        return core_v1.read_namespaced_service(name=name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            raise ServiceNotFound(namespace, name) from e
        raise


def delete_service(core_v1, namespace, name):
    """
    Delete a service, treating "not found" as success.

    Returns:
        bool: True if a service was deleted, False if it was already absent
    """
    try:
        core_v1.delete_namespaced_service(name=name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            logger.debug(f"Service {namespace}/{name} already absent")
            return False
        raise
    return True


def cluster_ips_attribute(spec):
    """
    Name of the plural cluster IP field on a V1ServiceSpec.

    Older kubernetes clients call it ``cluster_i_ps``, newer ones ``cluster_ips``.

    Returns:
        str: Attribute name, or None if the client model has neither
    """
    for attr in ("cluster_ips", "cluster_i_ps"):
        if hasattr(spec, attr):
            return attr
    return None


def prepare_service_for_creation(service):
    """
    Return a copy of ``service`` with identity fields cleared.

    Resource version, UID, creation timestamp and the allocated cluster IPs
    are dropped so the API server treats the object as new. A headless
    service keeps its ``None`` cluster IP.
    """
    fresh = copy.deepcopy(service)
    for attr in IDENTITY_FIELDS:
        if hasattr(fresh.metadata, attr):
            setattr(fresh.metadata, attr, None)
    if fresh.spec.cluster_ip != "None":
        fresh.spec.cluster_ip = None
        ips_attr = cluster_ips_attribute(fresh.spec)
        if ips_attr:
            setattr(fresh.spec, ips_attr, None)
    return fresh


def recreate_service(core_v1, service):
    """
    Delete the live service and create ``service`` in its place.

    Recreating rather than patching keeps kube-proxy from briefly balancing
    across both the selector-managed endpoints and a manual one. The new body
    is built before anything is deleted, so a failure there leaves the live
    service untouched.

    Args:
        core_v1: Kubernetes CoreV1Api client
        service: V1Service to create (identity fields are cleared on a copy)

    Returns:
        V1Service: The created service
    """
    namespace = service.metadata.namespace
    name = service.metadata.name
    body = prepare_service_for_creation(service)
    delete_service(core_v1, namespace, name)
    return core_v1.create_namespaced_service(namespace=namespace, body=body)


# =============================================================================
# ENDPOINTS
# =============================================================================

def delete_endpoints(core_v1, namespace, name):
    """
    Delete an endpoints object, treating "not found" as success.

    Returns:
        bool: True if an object was deleted, False if it was already absent
    """
    try:
        core_v1.delete_namespaced_endpoints(name=name, namespace=namespace)
    except ApiException as e:
        if e.status == 404:
            return False
        raise
    return True


def build_endpoints(namespace, name, ip, ports, labels=None):
    """
    Build a single-address endpoints object.

    Args:
        namespace: Namespace of the service the endpoints back
        name: Service name (endpoints share the service's name)
        ip: The only address traffic is sent to
        ports: List of (name, port, protocol) tuples
        labels: Labels to set on the object

    Returns:
        V1Endpoints: Object ready to create
    """
    return client.V1Endpoints(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
        subsets=[
            client.V1EndpointSubset(
                addresses=[client.V1EndpointAddress(ip=ip)],
                ports=[
                    client.CoreV1EndpointPort(name=port_name or None, port=port, protocol=protocol)
                    for port_name, port, protocol in ports
                ],
            )
        ],
    )


def create_endpoints(core_v1, endpoints):
    return core_v1.create_namespaced_endpoints(namespace=endpoints.metadata.namespace, body=endpoints)


def sweep_marked_endpoints(core_v1, label_selector=MARKER_SELECTOR):
    """
    Delete every endpoints object carrying the run marker, in all namespaces.

    Catches endpoints orphaned by a run that crashed before teardown.
    Running it twice in a row is a no-op the second time.

    Args:
        core_v1: Kubernetes CoreV1Api client
        label_selector: Marker selector (default: supplant=true)

    Returns:
        list[str]: "namespace/name" of every object deleted
    """
    deleted = []
    endpoints = core_v1.list_endpoints_for_all_namespaces(label_selector=label_selector)
    for ep in endpoints.items:
        namespace = ep.metadata.namespace
        name = ep.metadata.name
        if delete_endpoints(core_v1, namespace, name):
            deleted.append(f"{namespace}/{name}")
            logger.info(f" - deleted marked endpoint {namespace}/{name}")
    return deleted


# =============================================================================
# PODS
# =============================================================================

def _pod_is_usable(pod):
    if pod.metadata.deletion_timestamp is not None:
        return False
    return pod.status is not None and pod.status.phase == "Running"


def find_pod_for_service(core_v1, namespace, name):
    """
    Pick a running pod backing a service for a tunnel to attach to.

    Args:
        core_v1: Kubernetes CoreV1Api client
        namespace: Service namespace
        name: Service name

    Returns:
        str: Pod name

    Raises:
        NoPodFound: If the service is missing, has no selector, or no running pod matches
        TunnelSetupFailed: If the API calls themselves fail
    """
    try:
        service = get_service(core_v1, namespace, name)
    except ServiceNotFound as e:
        raise NoPodFound(str(e)) from e
    except ApiException as e:
        raise TunnelSetupFailed(f"error reading service {namespace}/{name}: {e.reason}") from e

    selector = format_selector(service.spec.selector)
    if not selector:
        raise NoPodFound(f"service {namespace}/{name} has no selector")

    try:
        pods = core_v1.list_namespaced_pod(namespace=namespace, label_selector=selector)
    except ApiException as e:
        raise TunnelSetupFailed(f"error listing pods for {namespace}/{name}: {e.reason}") from e

    for pod in pods.items:
        if _pod_is_usable(pod):
            return pod.metadata.name
    raise NoPodFound(f"unable to find a running pod for service {namespace}/{name}")
