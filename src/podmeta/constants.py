"""Global constants."""

from datetime import timedelta
from pathlib import Path

__all__ = [
    "BACKOFF_INITIAL",
    "BACKOFF_MAX",
    "CANCEL_POLL_INTERVAL",
    "CONFIG_FILE_ENV_VAR",
    "DESTINATION_DIR",
    "ENV_PREFIX",
    "LEGACY_ENV_PREFIX",
    "METADATA_SUFFIX",
    "NODE_FIELD_SELECTOR",
    "RECONNECT_TIMEOUT",
    "RETENTION_PERIOD",
    "ROOT_LOGGER",
    "STOP_TIMEOUT",
]

BACKOFF_INITIAL = timedelta(milliseconds=500)
"""Upper bound of the delay before the first watch connection retry."""

BACKOFF_MAX = timedelta(seconds=30)
"""Ceiling on the delay between watch connection retries."""

CANCEL_POLL_INTERVAL = timedelta(milliseconds=100)
"""How often threads blocked on the event handoff check for cancellation."""

ENV_PREFIX = "POD_META_EXPORTER_"
"""Prefix for all environment variables used for configuration."""

LEGACY_ENV_PREFIX = "EXPORTER_"
"""Prefix of environment variables still accepted from older deployments."""

CONFIG_FILE_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
"""Environment variable naming an optional YAML configuration file."""

DESTINATION_DIR = Path("/var/kube_meta")
"""Default directory for pod metadata files."""

METADATA_SUFFIX = ".meta"
"""Suffix of pod metadata files.

Every file with this suffix in the destination directory is owned by the
exporter and is removed on startup.
"""

NODE_FIELD_SELECTOR = "spec.nodeName={node}"
"""Field selector template restricting a pod watch to one node."""

RECONNECT_TIMEOUT = timedelta(minutes=5)
"""How long to let the API server hold a watch open before reopening it.

Restarting the watch periodically guards against connections that silently
stop delivering events.
"""

RETENTION_PERIOD = timedelta(minutes=1)
"""Default time to keep a metadata file after its pod was deleted."""

ROOT_LOGGER = "podmeta"
"""Name of the root logger for the exporter."""

STOP_TIMEOUT = timedelta(seconds=2)
"""How long to wait for the watch thread to finish once tracking stops.

A watch blocked on an idle connection only notices that it was stopped when
the next line arrives, so after this long it is abandoned instead.
"""
