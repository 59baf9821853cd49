"""Command-line interface for supplant."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from kubernetes.client.rest import ApiException

from supplant import __version__
from supplant.config import clean_config, config_from_services, expose_all_config, load_config, save_config
from supplant.constants import DEFAULT_LOCAL_IP
from supplant.errors import ConfigInvalid, NothingToDo, SupplantError
from supplant.k8s import get_outbound_ip, get_server_version, list_services, load_core_v1, sweep_marked_endpoints
from supplant.lifecycle import Coordinator
from supplant.output import configure_logging, print_header
from supplant.ports import PortResolver
from supplant.tunnel import TunnelManager

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130

app = typer.Typer(
    help="Replace services in a Kubernetes cluster with ports on your machine.",
    no_args_is_help=True,
)
config_app = typer.Typer(
    help="Create and tidy configuration files describing what to replace and what to reach.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@dataclass
class Settings:
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    kubectl: str = "kubectl"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"supplant version {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    kubeconfig: Optional[str] = typer.Option(
        None, "--kubeconfig", envvar="KUBECONFIG", help="Path to the kubeconfig file to use."
    ),
    context: Optional[str] = typer.Option(
        None, "--context", envvar="SUPPLANT_CONTEXT", help="Kubeconfig context to use."
    ),
    kubectl: str = typer.Option(
        "kubectl", "--kubectl", envvar="SUPPLANT_KUBECTL", help="kubectl binary used for port forwarding."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output."),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Print the version and exit."
    ),
) -> None:
    """supplant points cluster services at your local machine so you can run and
    debug them locally while the rest of the cluster keeps talking to them."""
    configure_logging(verbose)
    ctx.obj = Settings(kubeconfig=kubeconfig, context=context, kubectl=kubectl)


def _connect(settings):
    print_header("connecting to K8s")
    core_v1 = load_core_v1(settings.kubeconfig, settings.context)
    try:
        print_header(f"K8s version: {get_server_version()}")
    except ApiException as e:
        logger.warning(f"Unable to read server version: {e.reason}")
    return core_v1


def _fail(message, code=1):
    logger.error(message)
    raise typer.Exit(code)


def _drive(coordinator):
    try:
        result = coordinator.run()
    except NothingToDo as e:
        logger.error(f"{e}, exiting...")
        raise typer.Exit(0)
    except SupplantError as e:
        _fail(str(e))
    if result.interrupted:
        raise typer.Exit(EXIT_INTERRUPTED)
    if result.failures:
        logger.warning(f"⚠ {len(result.failures)} entr{'y' if len(result.failures) == 1 else 'ies'} failed during setup")


@app.command()
def run(
    ctx: typer.Context,
    config_file: Path = typer.Argument(..., help="Configuration file to launch."),
    ip: Optional[str] = typer.Option(
        None, "--ip", envvar="SUPPLANT_IP",
        help="IP address that services within the cluster will connect to (default: outbound address).",
    ),
    local_ip: str = typer.Option(
        DEFAULT_LOCAL_IP, "--local-ip", "--localip", envvar="SUPPLANT_LOCAL_IP",
        help="IP address that is used to listen.",
    ),
    fail_fast: bool = typer.Option(
        False, "--fail-fast/--keep-going",
        help="Abort the whole run when any entry fails to set up (default: skip that entry).",
    ),
) -> None:
    """Point services at local ports and forward local ports into the cluster as configured."""
    settings = ctx.obj
    try:
        cfg = load_config(config_file)
    except ConfigInvalid as e:
        _fail(str(e))

    external_ip = ip or get_outbound_ip()
    if cfg.enabled_substitutions() and not external_ip:
        _fail("unable to determine the IP address the cluster should connect to; pass --ip")

    core_v1 = _connect(settings)
    tunnels = TunnelManager(core_v1, kubectl=settings.kubectl, kubeconfig=settings.kubeconfig, context=settings.context)
    coordinator = Coordinator(core_v1, cfg, external_ip, local_ip=local_ip, tunnels=tunnels, fail_fast=fail_fast)
    _drive(coordinator)


@app.command("expose-all")
def expose_all(
    ctx: typer.Context,
    namespace: Optional[str] = typer.Option(
        None, "--namespace", "-n", help="Only expose services in this namespace (default: all)."
    ),
    local_ip: str = typer.Option(
        DEFAULT_LOCAL_IP, "--local-ip", "--localip", envvar="SUPPLANT_LOCAL_IP",
        help="IP address that is used to listen.",
    ),
) -> None:
    """Port forward every TCP port of every selector-backed service."""
    settings = ctx.obj
    core_v1 = _connect(settings)
    resolver = PortResolver(core_v1)
    cfg = expose_all_config(list_services(core_v1, namespace), resolver)
    tunnels = TunnelManager(core_v1, kubectl=settings.kubectl, kubeconfig=settings.kubeconfig, context=settings.context)
    coordinator = Coordinator(core_v1, cfg, None, local_ip=local_ip, tunnels=tunnels, resolver=resolver)
    _drive(coordinator)


@app.command()
def sweep(ctx: typer.Context) -> None:
    """Delete endpoints left behind by a run that did not shut down cleanly."""
    core_v1 = _connect(ctx.obj)
    print_header("sweeping marked endpoints")
    try:
        deleted = sweep_marked_endpoints(core_v1)
    except ApiException as e:
        _fail(f"error sweeping marked endpoints: {e.reason}")
    logger.info(f"✓ {len(deleted)} endpoint(s) removed")


@config_app.command("create")
def config_create(
    ctx: typer.Context,
    output: Path = typer.Argument(..., help="File to write the configuration template to."),
    namespace: Optional[str] = typer.Option(
        None, "--namespace", "-n", help="Only include services in this namespace (default: all)."
    ),
) -> None:
    """Write a configuration template listing the services in the cluster, all disabled."""
    core_v1 = _connect(ctx.obj)
    cfg = config_from_services(list_services(core_v1, namespace), PortResolver(core_v1))
    try:
        save_config(cfg, output)
    except OSError as e:
        _fail(f"error writing {output}: {e}")


@config_app.command("clean")
def config_clean(
    config_file: Path = typer.Argument(..., help="Configuration file to tidy in place."),
) -> None:
    """Remove every disabled entry from a configuration file."""
    try:
        cfg = load_config(config_file)
    except ConfigInvalid as e:
        _fail(str(e))
    save_config(clean_config(cfg), config_file)


def main():
    app()
