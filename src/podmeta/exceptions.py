"""Exceptions for the pod metadata exporter."""

from pathlib import Path
from typing import Self, override

from kubernetes.client import ApiException

__all__ = [
    "AlreadyTrackingError",
    "KubernetesError",
    "MetadataWriteError",
    "PodMetaError",
    "TrackingStoppedError",
]


class PodMetaError(Exception):
    """Base class for exporter exceptions."""

    def sentry_tags(self) -> dict[str, str]:
        """Return tags to attach to a Sentry event for this exception."""
        return {}


class AlreadyTrackingError(PodMetaError):
    """A tracker was asked to start while it already has a session."""


class TrackingStoppedError(PodMetaError):
    """Pod tracking ended without having been asked to stop."""


class MetadataWriteError(PodMetaError):
    """Writing a pod metadata file failed.

    Parameters
    ----------
    message
        Summary of error.
    path
        Path of the file that could not be written.
    """

    def __init__(self, message: str, path: Path) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    @override
    def __str__(self) -> str:
        result = f"{self.message} ({self.path})"
        if self.__cause__:
            result += f": {self.__cause__!s}"
        return result

    @override
    def sentry_tags(self) -> dict[str, str]:
        return {"path": str(self.path)}


class KubernetesError(PodMetaError):
    """A call to the Kubernetes API failed.

    Parameters
    ----------
    message
        Summary of error.
    kind
        Kind of object being acted on.
    namespace
        Namespace of object being acted on.
    name
        Name of object being acted on.
    node
        Node whose objects were being watched.
    status
        Status code of failure, if any.
    body
        Body of failure message, if any.
    """

    @classmethod
    def from_exception(
        cls,
        message: str,
        exc: ApiException,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        node: str | None = None,
    ) -> Self:
        """Create an exception from a Kubernetes API exception.

        Parameters
        ----------
        message
            Brief explanation of what was being attempted.
        exc
            Kubernetes API exception.
        kind
            Kind of object being acted on.
        namespace
            Namespace of object being acted on.
        name
            Name of object being acted on.
        node
            Node whose objects were being watched.

        Returns
        -------
        KubernetesError
            Newly-created exception.
        """
        return cls(
            message,
            kind=kind,
            namespace=namespace,
            name=name,
            node=node,
            status=exc.status,
            body=exc.body if exc.body else exc.reason,
        )

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        node: str | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.node = node
        self.status = status
        self.body = body

    @override
    def __str__(self) -> str:
        result = self._summary()
        if self.body:
            result += f": {self.body}"
        return result

    @override
    def sentry_tags(self) -> dict[str, str]:
        tags = {}
        if self.status:
            tags["status"] = str(self.status)
        if self.kind:
            tags["kind"] = self.kind
        if self.namespace:
            tags["namespace"] = self.namespace
        if self.name:
            tags["name"] = self.name
        if self.node:
            tags["node"] = self.node
        return tags

    def _summary(self) -> str:
        """Summarize the exception in a single line."""
        details = []
        if self.name:
            kind = f"{self.kind} " if self.kind else ""
            if self.namespace:
                details.append(f"{kind}{self.namespace}/{self.name}")
            else:
                details.append(f"{kind}{self.name}")
        elif self.kind:
            details.append(self.kind)
        if self.node:
            details.append(f"node {self.node}")
        if self.status:
            details.append(f"status {self.status}")
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"
