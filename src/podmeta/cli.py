"""Command-line interface for the pod metadata exporter."""

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from types import FrameType

import click
import sentry_sdk
from kubernetes import config as kube_config
from kubernetes.client import ApiClient
from safir.datetime import parse_timedelta
from safir.sentry import initialize_sentry
from structlog.stdlib import BoundLogger, get_logger

from . import __version__
from .config import Config
from .constants import CONFIG_FILE_ENV_VAR, ROOT_LOGGER
from .exceptions import PodMetaError
from .services.exporter import Exporter
from .services.tracker import PodTracker
from .storage.metadata import PodMetadataWriter

__all__ = ["main", "main_with_sentry"]


def _load_config(
    *,
    config_file: Path | None,
    node_name: str | None,
    retention_period: timedelta | None,
    destination_dir: Path | None,
    debug: bool,
) -> Config:
    """Build the configuration, overriding it from CLI options."""
    config = Config.from_file(config_file) if config_file else Config()
    if node_name:
        config.node_name = node_name
    if retention_period is not None:
        config.retention_period = retention_period
    if destination_dir:
        config.destination_dir = destination_dir
    if debug:
        config.debug = debug
    config.configure_logging()
    return config


def _kubernetes_client(logger: BoundLogger) -> ApiClient:
    """Load Kubernetes credentials and return an API client.

    In-cluster credentials are preferred. Outside a cluster, fall back to
    the user's kubeconfig for local development.
    """
    try:
        kube_config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.debug("Loaded kubeconfig")
    return ApiClient()


@contextmanager
def _stop_on_signal(
    stop: threading.Event, logger: BoundLogger
) -> Iterator[None]:
    """Set ``stop`` on SIGINT or SIGTERM, restoring old handlers on exit."""

    def handler(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal, stopping", signal=signum)
        stop.set()

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def _report_exception(exc: Exception) -> None:
    with sentry_sdk.new_scope() as scope:
        if isinstance(exc, PodMetaError):
            for key, value in exc.sentry_tags().items():
                scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, message="%(version)s")
def main() -> None:
    """Pod metadata exporter command-line interface."""


@main.command()
@click.option(
    "--config-file",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    envvar=CONFIG_FILE_ENV_VAR,
    default=None,
    help="Application configuration file",
)
@click.option(
    "--node-name",
    "-n",
    default=None,
    help="Name of the node to track pods on (default: hostname)",
)
@click.option(
    "--retention-period",
    "-r",
    type=parse_timedelta,
    default=None,
    help="How long to keep metadata after a pod was deleted",
)
@click.option(
    "--destination-dir",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory in which to write metadata files",
)
@click.option(
    "--debug",
    "-d",
    is_flag=True,
    help="Enable debug logging",
)
def run(
    *,
    config_file: Path | None,
    node_name: str | None,
    retention_period: timedelta | None,
    destination_dir: Path | None,
    debug: bool,
) -> None:
    """Export metadata of the pods on a node until interrupted."""
    config = _load_config(
        config_file=config_file,
        node_name=node_name,
        retention_period=retention_period,
        destination_dir=destination_dir,
        debug=debug,
    )
    logger = get_logger(ROOT_LOGGER)
    logger.info(
        "Starting pod metadata exporter", config=config.to_logging_dict()
    )

    stop = threading.Event()
    try:
        api_client = _kubernetes_client(logger)
        tracker = PodTracker(
            api_client,
            logger.bind(component="tracker"),
            reconnect_timeout=config.reconnect_timeout,
            backoff_initial=config.backoff_initial,
            backoff_max=config.backoff_max,
        )
        writer = PodMetadataWriter(
            config.destination_dir,
            config.retention_period,
            logger.bind(component="writer"),
        )
        exporter = Exporter(tracker, writer, logger)
        with _stop_on_signal(stop, logger):
            exporter.run(stop, config.node_name)
    except Exception as exc:
        logger.exception("Application error", error=str(exc))
        _report_exception(exc)
        raise click.ClickException(str(exc)) from exc


def main_with_sentry() -> None:
    """Call the main command group after initializing Sentry.

    Sentry is only enabled if the ``SENTRY_DSN`` environment variable is
    set. ``SENTRY_ENVIRONMENT`` names the environment.
    """
    initialize_sentry(release=__version__)
    main()
