"""Drive pod events from the tracker into the metadata writer."""

import threading
from collections.abc import Generator
from contextlib import closing
from typing import Protocol

from structlog.stdlib import BoundLogger

from ..exceptions import TrackingStoppedError
from ..models.domain.metadata import PodEvent
from ..storage.metadata import PodMetadataWriter

__all__ = ["Exporter", "PodEventSource"]


class PodEventSource(Protocol):
    """Anything that can produce pod events for a node."""

    def track(
        self, stop: threading.Event, node: str
    ) -> Generator[PodEvent, None, None]:
        """Start tracking pods on a node."""


class Exporter:
    """Export metadata for the pods on a node to files.

    Parameters
    ----------
    tracker
        Source of pod events, normally a `PodTracker`.
    writer
        Writer for the metadata files.
    logger
        Logger to use.
    """

    def __init__(
        self,
        tracker: PodEventSource,
        writer: PodMetadataWriter,
        logger: BoundLogger,
    ) -> None:
        self._tracker = tracker
        self._writer = writer
        self._logger = logger

    def run(self, stop: threading.Event, node: str) -> None:
        """Export pod metadata until asked to stop.

        Events are handled one at a time in the order they arrive.

        Parameters
        ----------
        stop
            Set this event to end the export cleanly.
        node
            Name of the node whose pods to export.

        Raises
        ------
        AlreadyTrackingError
            Raised if the tracker is already in use.
        MetadataWriteError
            Raised if a metadata file could not be written.
        TrackingStoppedError
            Raised if pod tracking ended without ``stop`` being set.
        """
        logger = self._logger.bind(node=node)
        with closing(self._tracker.track(stop, node)) as events:
            for event in events:
                self._writer.handle(event)
        if not stop.is_set():
            raise TrackingStoppedError(f"Tracking of pods on {node} failed")
        logger.info("Pod metadata export stopped")
