"""
Substitution engine.

Redirects a cluster service's traffic to the operator's machine:

1. allocate local ports left at 0
2. fetch the live service
3. validate ports and selector
4. snapshot the service and queue its restore
5. strip selector and ports, point each port at its local port, mark it
6. delete and recreate the service
7. replace its endpoints with one pointing at the operator's address, queue the delete

Each step that changes cluster state queues its undo on the ledger before
the next step runs, so a failure anywhere leaves an exact rollback plan.
"""
import copy
import logging
from dataclasses import dataclass

from kubernetes import client

from supplant.constants import MARKER_KEY, MARKER_VALUE
from supplant.errors import NoSelector, PortMismatch
from supplant.k8s import (
    build_endpoints,
    create_endpoints,
    delete_endpoints,
    get_service,
    recreate_service,
)
from supplant.ledger import DELETE_ENDPOINT, RESTORE_SERVICE
from supplant.output import print_header, print_list
from supplant.ports import allocate_local_port
from supplant.tunnel import PortPair

logger = logging.getLogger(__name__)


@dataclass
class ServiceSnapshot:
    """Exact copy of a service taken before it is mutated; used only to restore."""
    namespace: str
    name: str
    service: client.V1Service

    @classmethod
    def take(cls, service):
        return cls(
            namespace=service.metadata.namespace,
            name=service.metadata.name,
            service=copy.deepcopy(service),
        )


class SubstitutionEngine:
    """Snapshots, mutates, and restores substituted services.

    All cluster calls are synchronous and sequential so the ledger's append
    order matches the order in which changes were made.
    """

    def __init__(self, core_v1, ledger, external_ip, allocate_port=allocate_local_port):
        """
        Args:
            core_v1: Kubernetes CoreV1Api client
            ledger: RestorationLedger receiving undo actions
            external_ip: Address in-cluster clients are redirected to
            allocate_port: Callable returning a free local port
        """
        self.core_v1 = core_v1
        self.ledger = ledger
        self.external_ip = external_ip
        self.allocate_port = allocate_port
        self.snapshots = []

    # -------------------------------------------------------------------------
    # Forward
    # -------------------------------------------------------------------------

    def substitute(self, spec):
        """
        Take over one service.

        Args:
            spec: Enabled SubstitutionSpec; mappings with local port 0 are
                updated in place with the allocated port

        Returns:
            list[PortPair]: (local port, service port) for every mapping

        Raises:
            ServiceNotFound: If the service does not exist
            PortMismatch: If a configured port is not declared by the service
            NoSelector: If the service has no selector
            ApiException: If deleting or recreating an object fails
        """
        self._allocate_ports(spec)

        live = get_service(self.core_v1, spec.namespace, spec.name)
        live_ports = self._validate(spec, live)

        snapshot = ServiceSnapshot.take(live)
        self.snapshots.append(snapshot)
        self.ledger.push(RESTORE_SERVICE, spec.key, lambda: self.restore(snapshot))

        print_header(f"updating service {spec.name}")
        substitute = self._substitute_service(spec, live, live_ports)
        recreate_service(self.core_v1, substitute)

        self._replace_endpoints(spec, live_ports)
        self.ledger.push(
            DELETE_ENDPOINT,
            spec.key,
            lambda: delete_endpoints(self.core_v1, spec.namespace, spec.name),
        )
        logger.info(f"  ✓ {spec.key} now routes to {self.external_ip}")
        return [PortPair(m.local_port, m.remote_port) for m in spec.ports]

    def _allocate_ports(self, spec):
        for mapping in spec.ports:
            if mapping.local_port == 0:
                mapping.local_port = self.allocate_port()
                print_list(f"allocated local port {mapping.local_port} for {spec.name}:{mapping.remote_port}")

    def _validate(self, spec, live):
        declared = {p.port: p for p in (live.spec.ports or [])}
        for mapping in spec.ports:
            if mapping.remote_port not in declared:
                raise PortMismatch(spec.namespace, spec.name, mapping.remote_port, declared.keys())
        if not live.spec.selector:
            raise NoSelector(spec.namespace, spec.name)
        return declared

    def _substitute_service(self, spec, live, live_ports):
        substitute = copy.deepcopy(live)
        substitute.spec.selector = None
        substitute.spec.ports = []
        for mapping in spec.ports:
            original = live_ports[mapping.remote_port]
            substitute.spec.ports.append(client.V1ServicePort(
                name=original.name,
                protocol=original.protocol,
                port=mapping.remote_port,
                target_port=mapping.local_port,
                node_port=original.node_port,
            ))
        annotations = dict(substitute.metadata.annotations or {})
        annotations[MARKER_KEY] = MARKER_VALUE
        substitute.metadata.annotations = annotations
        return substitute

    def _replace_endpoints(self, spec, live_ports):
        delete_endpoints(self.core_v1, spec.namespace, spec.name)
        ports = [
            (live_ports[m.remote_port].name, m.local_port, live_ports[m.remote_port].protocol or "TCP")
            for m in spec.ports
        ]
        endpoints = build_endpoints(
            spec.namespace,
            spec.name,
            self.external_ip,
            ports,
            labels={MARKER_KEY: MARKER_VALUE},
        )
        create_endpoints(self.core_v1, endpoints)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(self, snapshot):
        """
        Put a service back exactly as it was snapshotted.

        The substituted service is deleted and the snapshot recreated with
        identity fields cleared; the cluster then rebuilds its endpoints
        from the restored selector.
        """
        print_list(f"restoring service {snapshot.name}")
        recreate_service(self.core_v1, snapshot.service)
