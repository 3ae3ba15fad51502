"""Data types for interacting with Kubernetes."""

from dataclasses import dataclass
from enum import Enum
from typing import Self, override

from kubernetes.client import V1Pod

__all__ = [
    "PodIdentity",
    "WatchEventType",
]


class WatchEventType(Enum):
    """Possible values of the ``type`` field of Kubernetes watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class PodIdentity:
    """Identifies a pod within the cluster.

    Namespace and name together are unique for the lifetime of a pod, so
    this is used as the key for everything the exporter keeps per pod.
    """

    namespace: str
    """Namespace of the pod."""

    name: str
    """Name of the pod."""

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("Pod namespace must not be empty")
        if not self.name:
            raise ValueError("Pod name must not be empty")

    @classmethod
    def from_pod(cls, pod: V1Pod) -> Self:
        """Extract the identity of a Kubernetes pod object.

        Raises
        ------
        ValueError
            Raised if the pod has no metadata, namespace, or name.
        """
        if not pod.metadata:
            raise ValueError("Pod has no metadata")
        return cls(namespace=pod.metadata.namespace, name=pod.metadata.name)

    @override
    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"
