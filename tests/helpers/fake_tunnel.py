"""Port-forward transport stand-in driven directly by tests."""
import threading

from supplant.errors import TunnelSetupFailed
from supplant.tunnel import PortPair


class FakeForward:
    """Behaves like supplant.tunnel.PortForward without running kubectl."""

    next_port = 40000

    def __init__(self, namespace, pod, ports, address, auto_ready=True):
        self.namespace = namespace
        self.pod = pod
        self.address = address
        self.requested = [PortPair(*p) for p in ports]
        self.auto_ready = auto_ready
        self.ready = threading.Event()
        self.error = None
        self._settled = threading.Event()
        self.started = False
        self.close_count = 0
        self._bound = {}

    def start(self):
        self.started = True
        if self.auto_ready:
            self.become_ready()
        return self

    def become_ready(self):
        for i, (local, remote) in enumerate(self.requested):
            if not local:
                FakeForward.next_port += 1
                local = FakeForward.next_port
            self._bound[i] = local
        self.ready.set()
        self._settled.set()

    def fail(self, message="kubectl exited"):
        self.error = TunnelSetupFailed(message)
        self._settled.set()

    @property
    def ports(self):
        return [PortPair(self._bound.get(i, p.local_port), p.remote_port) for i, p in enumerate(self.requested)]

    def wait_ready(self, timeout=None):
        self._settled.wait(timeout)
        if self.error is not None:
            raise self.error
        return self.ready.is_set()

    def close(self):
        self.close_count += 1


class FakeForwarderFactory:
    """Factory recording every transport it creates.

    ``never_ready`` holds service-independent pod names whose forwards never
    report ready; ``fail_start`` holds pod names whose start raises.
    """

    def __init__(self, never_ready=(), fail_start=()):
        self.never_ready = set(never_ready)
        self.fail_start = set(fail_start)
        self.created = []

    def __call__(self, namespace, pod, ports, address):
        if pod in self.fail_start:
            raise TunnelSetupFailed(f"unable to run kubectl for {pod}")
        forward = FakeForward(namespace, pod, ports, address, auto_ready=pod not in self.never_ready)
        self.created.append(forward)
        return forward
