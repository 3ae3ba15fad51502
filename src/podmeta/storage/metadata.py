"""Storage layer for pod metadata files."""

import json
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path

from safir.datetime import current_datetime
from structlog.stdlib import BoundLogger

from ..constants import METADATA_SUFFIX
from ..exceptions import MetadataWriteError
from ..models.domain.kubernetes import PodIdentity
from ..models.domain.metadata import DeletionTicket, PodEvent, PodEventType

__all__ = ["PodMetadataWriter"]


class PodMetadataWriter:
    """Keep one metadata file per pod in a directory.

    Files are named ``<namespace>_<name>.meta`` and contain the pod document
    as JSON. A file is written when its pod is created and is removed once
    the retention period has passed after the pod was deleted. Removal is
    lazy: pending removals are carried out at the start of each call to
    `handle`.

    All existing metadata files in the directory are removed on creation,
    since files left by a previous run may describe pods that no longer
    exist.

    This class is not thread-safe. Events must be handled one at a time, in
    the order they were received.

    Parameters
    ----------
    directory
        Directory in which to keep metadata files.
    retention
        How long to keep a file after its pod was deleted.
    logger
        Logger to use.
    clock
        Source of the current time, overridable for testing.
    """

    def __init__(
        self,
        directory: Path,
        retention: timedelta,
        logger: BoundLogger,
        *,
        clock: Callable[[], datetime] = partial(
            current_datetime, microseconds=True
        ),
    ) -> None:
        self._directory = directory
        self._retention = retention
        self._logger = logger.bind(directory=str(directory))
        self._clock = clock

        # Tickets are appended with a constant retention and a
        # non-decreasing clock, so the queue is always sorted by not_before.
        self._pending: deque[DeletionTicket] = deque()

        self._remove_all()

    @property
    def pending(self) -> list[DeletionTicket]:
        """Removals that have been scheduled but not yet carried out."""
        return list(self._pending)

    def path_for(self, identity: PodIdentity) -> Path:
        """Return the path of the metadata file for a pod."""
        filename = f"{identity.namespace}_{identity.name}{METADATA_SUFFIX}"
        return self._directory / filename

    def handle(self, event: PodEvent) -> None:
        """Update the metadata files for a pod event.

        Any removals that have come due are carried out first. Then a
        ``CREATED`` event writes the metadata file, replacing any existing
        one, and a ``REMOVED`` event schedules the file for removal after the
        retention period. Other events are ignored; in particular, metadata
        files are not updated when the pod changes.

        Parameters
        ----------
        event
            Pod event to handle.

        Raises
        ------
        MetadataWriteError
            Raised if the metadata file could not be written.
        """
        self._remove_expired()
        match event.type:
            case PodEventType.CREATED:
                self._write(event)
            case PodEventType.REMOVED:
                self._schedule_removal(event.identity)
            case _:
                pass

    def _remove_all(self) -> None:
        for path in self._directory.glob(f"*{METADATA_SUFFIX}"):
            self._remove(path)

    def _remove_expired(self) -> None:
        now = self._clock()
        while self._pending and self._pending[0].not_before <= now:
            ticket = self._pending.popleft()
            self._remove(ticket.path)

    def _remove(self, path: Path) -> None:
        logger = self._logger.bind(path=str(path))
        try:
            path.unlink()
        except FileNotFoundError:
            logger.info("Metadata file already removed")
        except OSError as e:
            logger.warning("Cannot remove metadata file", error=str(e))
        else:
            logger.debug("Removed metadata file")

    def _schedule_removal(self, identity: PodIdentity) -> None:
        ticket = DeletionTicket(
            path=self.path_for(identity),
            not_before=self._clock() + self._retention,
        )
        self._pending.append(ticket)
        self._logger.debug(
            "Scheduled metadata file for removal",
            pod=str(identity),
            not_before=ticket.not_before.isoformat(),
        )

    def _write(self, event: PodEvent) -> None:
        path = self.path_for(event.identity)
        content = json.dumps(event.pod) + "\n"
        try:
            path.write_text(content)
        except (OSError, ValueError) as e:
            msg = f"Cannot write metadata for pod {event.identity}"
            raise MetadataWriteError(msg, path) from e
        self._logger.debug("Wrote metadata file", path=str(path))
