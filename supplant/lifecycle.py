"""
Lifecycle coordinator.

Drives one run through Setup -> AwaitReady -> Active -> Teardown -> Done:

- Setup: substitute every enabled service, then open a tunnel for every
  enabled external entry; each success queues its undo on the ledger
  immediately.
- AwaitReady: wait for every tunnel's readiness signal (no timeout; a
  tunnel that never reports ready blocks the run until a stop request).
- Active: block until the operator interrupts.
- Teardown: sweep marked endpoints, then drain the ledger in reverse.

Teardown always runs, whatever happened before it.
"""
import logging
import signal
import threading
from dataclasses import dataclass, field

from kubernetes.client.rest import ApiException

from supplant.constants import DEFAULT_LOCAL_IP
from supplant.errors import NothingToDo, SetupFailed, SupplantError, TunnelSetupFailed
from supplant.k8s import get_service, sweep_marked_endpoints
from supplant.ledger import CLOSE_TUNNEL, RestorationLedger
from supplant.output import print_banner, print_header, print_list, print_summary_list
from supplant.ports import PortResolver, allocate_local_port, is_numeric_port
from supplant.substitution import SubstitutionEngine
from supplant.tunnel import FORWARD, PortPair, TunnelManager

logger = logging.getLogger(__name__)

SETUP = "Setup"
AWAIT_READY = "AwaitReady"
ACTIVE = "Active"
TEARDOWN = "Teardown"
DONE = "Done"


@dataclass
class SetupResult:
    """What Setup achieved; consulted once to decide whether there is work to do."""
    substituted: list = field(default_factory=list)
    tunnels: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    interrupted: bool = False

    @property
    def forwarded(self):
        return [h for h in self.tunnels if h.kind == FORWARD]

    @property
    def has_work(self):
        return bool(self.substituted) or bool(self.forwarded)


class Coordinator:
    """Sequences one supplant run and guarantees its teardown."""

    def __init__(self, core_v1, cfg, external_ip, local_ip=DEFAULT_LOCAL_IP, tunnels=None,
                 resolver=None, fail_fast=False, allocate_port=allocate_local_port,
                 stop_event=None, handle_signals=True):
        """
        Args:
            core_v1: Kubernetes CoreV1Api client
            cfg: Config for this run (read once, never written)
            external_ip: Address substituted services are redirected to
            local_ip: Address tunnels listen on (default: 127.0.0.1)
            tunnels: TunnelManager (default: kubectl-backed manager on core_v1)
            resolver: PortResolver for named external target ports
            fail_fast: Abort the whole run on the first entry failure (default: False)
            allocate_port: Callable returning a free local port
            stop_event: Event that ends the Active state when set
            handle_signals: Turn SIGINT/SIGTERM into a stop request while running
        """
        self.core_v1 = core_v1
        self.cfg = cfg
        self.external_ip = external_ip
        self.local_ip = local_ip
        self.fail_fast = fail_fast
        self.handle_signals = handle_signals
        self.ledger = RestorationLedger()
        self.engine = SubstitutionEngine(core_v1, self.ledger, external_ip, allocate_port=allocate_port)
        self.tunnels = tunnels or TunnelManager(core_v1)
        self.resolver = resolver or PortResolver(core_v1)
        self.stop_event = stop_event or threading.Event()
        self.state = None
        self.result = None
        self.teardown_outcomes = []
        self.swept = []

    def _transition(self, state):
        logger.debug(f"State {self.state} -> {state}")
        self.state = state

    def request_stop(self):
        """Ask the run to leave Active (or to stop Setup early) and tear down."""
        self.stop_event.set()

    # =========================================================================
    # SETUP
    # =========================================================================

    def setup(self):
        """
        Apply every enabled substitution and open every enabled external tunnel.

        Returns:
            SetupResult: Substituted services, open tunnels, and per-entry failures

        Raises:
            SetupFailed: On the first entry failure when running fail-fast
        """
        self._transition(SETUP)
        result = self.result = SetupResult()

        for spec in self.cfg.enabled_substitutions():
            if self.stop_event.is_set():
                result.interrupted = True
                return result
            try:
                pairs = self.engine.substitute(spec)
            except (SupplantError, ApiException) as e:
                self._entry_failed(result, spec, e)
                continue
            handle = self.tunnels.route(spec.namespace, spec.name, self.external_ip, pairs)
            self.ledger.push(CLOSE_TUNNEL, spec.key, lambda h=handle: self.tunnels.close(h))
            result.substituted.append(spec.key)
            result.tunnels.append(handle)

        for spec in self.cfg.enabled_external():
            if self.stop_event.is_set():
                result.interrupted = True
                return result
            try:
                pairs = self._external_ports(spec)
                handle = self.tunnels.open(spec.namespace, spec.name, self.local_ip, pairs)
            except (SupplantError, ApiException) as e:
                self._entry_failed(result, spec, e)
                continue
            self.ledger.push(CLOSE_TUNNEL, spec.key, lambda h=handle: self.tunnels.close(h))
            result.tunnels.append(handle)

        result.interrupted = self.stop_event.is_set()
        return result

    def _entry_failed(self, result, spec, error):
        reason = getattr(error, "reason", None) if isinstance(error, ApiException) else None
        logger.error(f"✗ {spec.key}: {reason or error}")
        result.failures.append((spec.key, error))
        if self.fail_fast:
            raise SetupFailed(spec.key, reason or error) from error

    def _external_ports(self, spec):
        service = None
        pairs = []
        for mapping in spec.ports:
            if is_numeric_port(mapping.target_port):
                remote = int(mapping.target_port)
            else:
                if service is None:
                    service = get_service(self.core_v1, spec.namespace, spec.name)
                remote = self.resolver.resolve(service, mapping.target_port)
            pairs.append(PortPair(mapping.local_port, remote))
        return pairs

    # =========================================================================
    # AWAIT READY / ACTIVE
    # =========================================================================

    def await_ready(self, poll_interval=0.5):
        """
        Wait for every tunnel to report ready and print where each port goes.

        A tunnel that fails is logged and left out; the others keep running.
        A stop request ends the wait and marks the result interrupted.

        Args:
            poll_interval: Seconds between stop checks while a tunnel is pending

        Returns:
            list[tuple[TunnelHandle, Exception]]: Tunnels that failed to come up
        """
        self._transition(AWAIT_READY)
        failures = []
        logger.info(f"⏳ Waiting for {len(self.result.tunnels)} tunnel(s) to accept connections")
        for handle in self.result.tunnels:
            try:
                while not handle.wait_ready(poll_interval):
                    if self.stop_event.is_set():
                        self.result.interrupted = True
                        return failures
            except TunnelSetupFailed as e:
                logger.error(f"✗ {handle.key}: {e}")
                failures.append((handle, e))
                continue
            print_header(f"forwarding for {handle.name}")
            for line in handle.describe():
                print_list(line)
        return failures

    def wait_for_termination(self, poll_interval=1.0):
        """Block until a stop is requested (Ctrl+C or SIGTERM)."""
        self._transition(ACTIVE)
        print_banner("forwarding ports, hit Ctrl+C to exit")
        while not self.stop_event.wait(poll_interval):
            pass

    # =========================================================================
    # TEARDOWN
    # =========================================================================

    def teardown(self):
        """
        Sweep marked endpoints, then undo everything Setup did, most recent first.

        Endpoints go before services are restored, so a restored service never
        has a marked endpoints object shadowing its selector. Never raises:
        every failure is logged and the remaining actions still run.

        Returns:
            list[UndoOutcome]: Outcome of every undo action, in execution order
        """
        self._transition(TEARDOWN)
        print_header("cleaning up....")

        if self.cfg.enabled_substitutions():
            try:
                self.swept = sweep_marked_endpoints(self.core_v1)
            except ApiException as e:
                logger.error(f"✗ error sweeping marked endpoints: {e.reason}")

        self.teardown_outcomes = self.ledger.unwind()

        failed = [o for o in self.teardown_outcomes if not o.ok]
        if failed:
            print_summary_list([str(o.error) for o in failed], title="❌ Teardown failures")
        else:
            logger.info("✓ cluster restored")
        self._transition(DONE)
        return self.teardown_outcomes

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self):
        """
        Execute a whole run.

        Returns:
            SetupResult: Outcome of Setup (``interrupted`` is set when the
            operator stopped the run before it became active)

        Raises:
            NothingToDo: If no entry produced a substitution or a tunnel
            SetupFailed: On the first entry failure when running fail-fast
        """
        previous = self._install_signal_handlers()
        try:
            result = self.setup()
            if result.interrupted:
                logger.warning("Interrupted during setup")
                return result
            if not result.has_work:
                raise NothingToDo("no services configured for supplanting or port forwarding")
            self.await_ready()
            if result.interrupted:
                logger.warning("Interrupted while waiting for tunnels")
                return result
            self.wait_for_termination()
            return result
        finally:
            self.teardown()
            self._restore_signal_handlers(previous)

    def _install_signal_handlers(self):
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, lambda *_: self.request_stop())
        return previous

    def _restore_signal_handlers(self, previous):
        for signum, handler in previous.items():
            signal.signal(signum, handler)
