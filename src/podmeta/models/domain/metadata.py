"""Models for pod lifecycle events and their on-disk snapshots."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Self

from kubernetes.client import V1Pod

from ...storage.kubernetes.watcher import WatchEvent
from .kubernetes import PodIdentity, WatchEventType

__all__ = [
    "DeletionTicket",
    "PodEvent",
    "PodEventType",
]


class PodEventType(Enum):
    """Kind of change to a pod, as seen by the metadata writer."""

    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"
    IGNORE = "ignore"

    @classmethod
    def from_watch_event_type(cls, event_type: WatchEventType) -> Self:
        """Map the type of a Kubernetes watch event to a pod event type.

        Anything that is not an object change maps to ``IGNORE``.
        """
        match event_type:
            case WatchEventType.ADDED:
                return cls.CREATED
            case WatchEventType.MODIFIED:
                return cls.UPDATED
            case WatchEventType.DELETED:
                return cls.REMOVED
            case _:
                return cls.IGNORE


@dataclass
class PodEvent:
    """Lifecycle event for a pod on the tracked node."""

    identity: PodIdentity
    """Namespace and name of the pod."""

    type: PodEventType
    """What happened to the pod."""

    pod: dict[str, Any]
    """Full pod document exactly as returned by the Kubernetes API."""

    @classmethod
    def from_watch_event(cls, event: WatchEvent[V1Pod]) -> Self:
        """Create a pod event from a parsed watch event.

        Raises
        ------
        ValueError
            Raised if the pod in the event has no namespace or name.
        """
        return cls(
            identity=PodIdentity.from_pod(event.object),
            type=PodEventType.from_watch_event_type(event.action),
            pod=event.raw_object,
        )


@dataclass(frozen=True)
class DeletionTicket:
    """Scheduled removal of a metadata file."""

    path: Path
    """Metadata file to remove."""

    not_before: datetime
    """Earliest time at which the file may be removed."""
