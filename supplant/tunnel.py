"""
Tunnel management for supplant.

A tunnel makes a set of ports reachable across the cluster boundary. Two
variants share one handle shape so the coordinator can wait on and close
them uniformly:

- PortForward: a background ``kubectl port-forward`` to a pod backing a
  service; ready once kubectl reports every listener.
- DirectRoute: a substituted service whose endpoints point straight at the
  operator's machine; nothing runs locally, so it is ready immediately.
"""
import logging
import re
import subprocess
import threading
from collections import deque, namedtuple

from supplant.constants import DEFAULT_LOCAL_IP
from supplant.errors import TunnelSetupFailed
from supplant.k8s import find_pod_for_service

logger = logging.getLogger(__name__)

PortPair = namedtuple("PortPair", ["local_port", "remote_port"])

FORWARD = "forward"
ROUTE = "route"


class PortForward:
    """kubectl port-forward to a pod, running in the background.

    Unlike a blocking context manager, ``start()`` returns as soon as the
    process is spawned; ``ready`` is set once kubectl has printed a
    "Forwarding from" line for every requested remote port. Asynchronous
    failures after that point are logged, never raised.
    """

    FORWARD_LINE = re.compile(r"Forwarding from (\S+):(\d+) -> (\d+)")
    ERROR_LINE = re.compile(r"^(error|E\d{4} )")

    def __init__(self, namespace, pod, ports, address=DEFAULT_LOCAL_IP, kubectl="kubectl",
                 kubeconfig=None, context=None):
        """
        Initialize port-forward configuration.

        Args:
            namespace: Kubernetes namespace containing the pod
            pod: Pod name to port-forward to
            ports: List of PortPair; a local port of 0 lets kubectl pick one
            address: Local address to listen on (default: 127.0.0.1)
            kubectl: kubectl binary (default: "kubectl")
            kubeconfig: Optional kubeconfig path passed to kubectl
            context: Optional kubeconfig context passed to kubectl
        """
        self.namespace = namespace
        self.pod = pod
        self.requested = [PortPair(*p) for p in ports]
        self.address = address
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.context = context
        self.process = None
        self.ready = threading.Event()
        self.error = None
        self._settled = threading.Event()
        self._closing = False
        self._lock = threading.Lock()
        self._bound = {}
        self._tail = deque(maxlen=5)
        self._watcher = None

    def command(self):
        cmd = [self.kubectl, "port-forward", f"pod/{self.pod}", "-n", self.namespace, "--address", self.address]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--context", self.context]
        for local, remote in self.requested:
            cmd.append(f"{local}:{remote}" if local else f":{remote}")
        return cmd

    def start(self):
        """Spawn kubectl and start watching its output."""
        cmd = self.command()
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise TunnelSetupFailed(f"unable to run {self.kubectl}: {e}") from e

        self._watcher = threading.Thread(
            target=self._watch,
            name=f"port-forward-{self.namespace}-{self.pod}",
            daemon=True,
        )
        self._watcher.start()
        return self

    def _watch(self):
        for line in self.process.stdout:
            line = line.rstrip()
            if not line:
                continue
            self._tail.append(line)
            match = self.FORWARD_LINE.search(line)
            if match:
                self._record(int(match.group(2)), int(match.group(3)))
                if len(self._bound) == len(self.requested):
                    self.ready.set()
                    self._settled.set()
            elif self.ERROR_LINE.match(line):
                logger.warning(f"port forward {self.namespace}/{self.pod}: {line}")
            else:
                logger.debug(f"port forward {self.namespace}/{self.pod}: {line}")

        returncode = self.process.wait()
        if self._closing:
            return
        if not self.ready.is_set():
            detail = "; ".join(self._tail) or f"exit status {returncode}"
            self.error = TunnelSetupFailed(f"port forward to {self.namespace}/{self.pod} failed: {detail}")
            self._settled.set()
            logger.error(f"✗ {self.error}")
        else:
            logger.error(f"✗ port forward to {self.namespace}/{self.pod} exited unexpectedly (status {returncode})")

    def _record(self, local, remote):
        """Match a reported listener to the first requested pair it can satisfy."""
        if local in self._bound.values():
            return
        open_pairs = [i for i, p in enumerate(self.requested) if i not in self._bound and p.remote_port == remote]
        exact = [i for i in open_pairs if self.requested[i].local_port == local]
        picked = exact or [i for i in open_pairs if not self.requested[i].local_port]
        if picked:
            self._bound[picked[0]] = local

    @property
    def ports(self):
        """Requested port pairs with local ports replaced by the bound ones once known."""
        return [PortPair(self._bound.get(i, p.local_port), p.remote_port) for i, p in enumerate(self.requested)]

    def wait_ready(self, timeout=None):
        """
        Block until kubectl is listening or has failed.

        Args:
            timeout: Seconds to wait (default: forever)

        Returns:
            bool: True once ready, False on timeout

        Raises:
            TunnelSetupFailed: If kubectl exited before becoming ready
        """
        self._settled.wait(timeout)
        if self.error is not None:
            raise self.error
        return self.ready.is_set()

    def close(self):
        """Stop port-forward. Safe to call more than once."""
        with self._lock:
            if self._closing:
                return
            self._closing = True
        if self.process is None:
            return
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        if self._watcher is not None:
            self._watcher.join(timeout=5)
        if self.process.stdout is not None:
            self.process.stdout.close()

    def __enter__(self):
        """Start port-forward and wait until it is listening."""
        self.start()
        self.wait_ready()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Stop port-forward."""
        self.close()


class DirectRoute:
    """Transport for a substituted service.

    In-cluster clients connect to the operator's address directly through
    the manual endpoints object, so there is no local process to manage.
    """

    def __init__(self, ports):
        self.ports = [PortPair(*p) for p in ports]
        self.ready = threading.Event()
        self.ready.set()
        self.error = None

    def start(self):
        return self

    def wait_ready(self, timeout=None):
        return True

    def close(self):
        pass


class TunnelHandle:
    """Uniform handle over a PortForward or a DirectRoute."""

    def __init__(self, namespace, name, address, kind, transport):
        self.namespace = namespace
        self.name = name
        self.address = address
        self.kind = kind
        self.transport = transport
        self.closed = False
        self._lock = threading.Lock()

    @property
    def key(self):
        return f"{self.namespace}/{self.name}"

    @property
    def ports(self):
        return self.transport.ports

    @property
    def ready(self):
        return self.transport.ready.is_set()

    def wait_ready(self, timeout=None):
        return self.transport.wait_ready(timeout)

    def describe(self):
        """Operator-facing lines describing where each port goes."""
        lines = []
        for local, remote in self.ports:
            if self.kind == ROUTE:
                lines.append(f"{self.address}:{local} is now the endpoint for {self.name}:{remote}")
            else:
                lines.append(f"{self.address}:{local} points to remote {self.name}:{remote}")
        return lines

    def close(self):
        """Close the underlying transport once; later calls do nothing."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self.transport.close()

    def __repr__(self):
        return f"TunnelHandle({self.kind} {self.key} {self.ports})"


class TunnelManager:
    """Opens, tracks, and closes the tunnels of one run.

    Handles are independent: a transport that dies only logs, and closing
    one handle never touches another.
    """

    def __init__(self, core_v1, forwarder=None, kubectl="kubectl", kubeconfig=None, context=None):
        """
        Args:
            core_v1: Kubernetes CoreV1Api client used to pick backing pods
            forwarder: Factory ``(namespace, pod, ports, address) -> transport``
                (default: PortForward through kubectl)
            kubectl: kubectl binary for the default forwarder
            kubeconfig: kubeconfig path for the default forwarder
            context: kubeconfig context for the default forwarder
        """
        self.core_v1 = core_v1
        self.forwarder = forwarder or self._kubectl_forwarder
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.context = context
        self.handles = []

    def _kubectl_forwarder(self, namespace, pod, ports, address):
        return PortForward(namespace, pod, ports, address=address, kubectl=self.kubectl,
                           kubeconfig=self.kubeconfig, context=self.context)

    def open(self, namespace, name, local_ip, ports):
        """
        Start a port forward to a pod backing a service. Does not wait.

        Args:
            namespace: Service namespace
            name: Service name
            local_ip: Address to listen on
            ports: List of PortPair (local 0 = any free port)

        Returns:
            TunnelHandle: Handle whose readiness fires once listening

        Raises:
            NoPodFound: If no running pod backs the service
            TunnelSetupFailed: If the transport cannot be started
        """
        pod = find_pod_for_service(self.core_v1, namespace, name)
        transport = self.forwarder(namespace, pod, ports, local_ip)
        transport.start()
        handle = TunnelHandle(namespace, name, local_ip, FORWARD, transport)
        self.handles.append(handle)
        logger.info(f" - opening port forward {namespace}/{name} via pod {pod}")
        return handle

    def route(self, namespace, name, address, ports):
        """Register a substituted service as a ready-made tunnel handle."""
        handle = TunnelHandle(namespace, name, address, ROUTE, DirectRoute(ports).start())
        self.handles.append(handle)
        return handle

    def close(self, handle):
        """Close one tunnel; closing twice is harmless."""
        handle.close()
