"""Track the pods scheduled on a node."""

import queue
import threading
import weakref
from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import timedelta

from kubernetes import client
from kubernetes.client import ApiClient, V1Pod
from structlog.stdlib import BoundLogger

from ..constants import (
    BACKOFF_INITIAL,
    BACKOFF_MAX,
    CANCEL_POLL_INTERVAL,
    RECONNECT_TIMEOUT,
    STOP_TIMEOUT,
)
from ..exceptions import AlreadyTrackingError
from ..models.domain.metadata import PodEvent, PodEventType
from ..storage.kubernetes.watcher import KubernetesWatcher

__all__ = ["PodTracker"]


@dataclass
class _Session:
    """State of one tracking session, shared by its two threads."""

    node: str
    stop: threading.Event
    watcher: KubernetesWatcher[V1Pod]
    logger: BoundLogger
    handoff: queue.Queue[PodEvent] = field(
        default_factory=lambda: queue.Queue(maxsize=1)
    )
    done: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.stop.is_set() or self.watcher.stopped


class PodTracker:
    """Track the lifecycle of pods scheduled on a node.

    The tracker watches pods in all namespaces with a field selector for the
    node and turns the watch into an iterator of `PodEvent` objects. The
    watch runs in a separate thread and each event is handed over to the
    consumer before the next one is read, so a slow consumer slows down the
    watch rather than letting events pile up.

    The watch is reopened when its resource version expires, when the API
    server closes it, and when the connection is lost. Refused connections
    are retried with backoff. Any other error ends tracking. The error is
    logged and the iterator ends.

    A tracker supports one tracking session at a time. The session is
    released when its iterator finishes, is closed, or is garbage-collected
    without ever being iterated.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    reconnect_timeout
        How long to let the API server hold a watch open before reopening
        it.
    backoff_initial
        Upper bound of the delay before the first connection retry.
    backoff_max
        Ceiling on the delay between connection retries.
    poll_interval
        How often blocked threads check for cancellation.
    stop_timeout
        How long to wait for the watch thread once tracking stops before
        abandoning it.
    """

    def __init__(
        self,
        api_client: ApiClient,
        logger: BoundLogger,
        *,
        reconnect_timeout: timedelta = RECONNECT_TIMEOUT,
        backoff_initial: timedelta = BACKOFF_INITIAL,
        backoff_max: timedelta = BACKOFF_MAX,
        poll_interval: timedelta = CANCEL_POLL_INTERVAL,
        stop_timeout: timedelta = STOP_TIMEOUT,
    ) -> None:
        self._api = client.CoreV1Api(api_client)
        self._logger = logger
        self._reconnect_timeout = reconnect_timeout
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._poll_interval = poll_interval.total_seconds()
        self._stop_timeout = stop_timeout.total_seconds()
        self._lock = threading.Lock()
        self._active: _Session | None = None

    @property
    def running(self) -> bool:
        """Whether a tracking session is in progress."""
        with self._lock:
            return self._active is not None

    def track(
        self, stop: threading.Event, node: str
    ) -> Generator[PodEvent, None, None]:
        """Start tracking pods on a node.

        The watch is opened when the returned iterator is first advanced.

        Parameters
        ----------
        stop
            Set this event to end tracking. The returned iterator then ends
            promptly, even while waiting for the next event.
        node
            Name of the node whose pods to track.

        Returns
        -------
        Generator
            Iterator over pod events. It ends when ``stop`` is set or when
            tracking fails. Closing it early also ends tracking.

        Raises
        ------
        AlreadyTrackingError
            Raised if this tracker already has a session in progress.
        """
        logger = self._logger.bind(node=node)
        watcher = KubernetesWatcher(
            method=self._api.list_pod_for_all_namespaces,
            object_type=V1Pod,
            kind="Pod",
            node=node,
            timeout=self._reconnect_timeout,
            backoff_initial=self._backoff_initial,
            backoff_max=self._backoff_max,
            logger=logger,
        )
        session = _Session(
            node=node, stop=stop, watcher=watcher, logger=logger
        )
        with self._lock:
            if self._active:
                msg = f"Already tracking pods, cannot start tracking {node}"
                raise AlreadyTrackingError(msg)
            self._active = session

        events = self._events(session)
        weakref.finalize(events, self._release, session)
        return events

    def _release(self, session: _Session) -> None:
        """Free the tracker for a new session if this one still holds it."""
        with self._lock:
            if self._active is session:
                self._active = None

    def _events(self, session: _Session) -> Generator[PodEvent, None, None]:
        """Start the worker thread and yield the events it hands over."""
        worker = threading.Thread(
            target=self._run,
            args=(session,),
            name=f"pod-tracker-{session.node}",
            daemon=True,
        )
        worker.start()
        session.logger.info("Started tracking pods")
        try:
            while not session.stop.is_set():
                try:
                    event = session.handoff.get(timeout=self._poll_interval)
                except queue.Empty:
                    if session.done.is_set():
                        # Anything handed over before the worker finished.
                        while not session.handoff.empty():
                            yield session.handoff.get_nowait()
                        return
                    continue
                yield event
            session.logger.info("Stopping pod tracking")
        finally:
            session.watcher.stop()
            worker.join(self._stop_timeout)
            if worker.is_alive():
                session.logger.warning(
                    "Pod watch did not stop, abandoning it",
                    timeout=self._stop_timeout,
                )
            self._release(session)

    def _run(self, session: _Session) -> None:
        """Run the watch and hand events to the consumer."""
        logger = session.logger
        try:
            for watch_event in session.watcher.watch():
                try:
                    event = PodEvent.from_watch_event(watch_event)
                except ValueError as e:
                    logger.warning("Ignoring malformed pod", error=str(e))
                    continue
                if event.type == PodEventType.IGNORE:
                    continue
                logger.debug(
                    "Pod event",
                    pod=str(event.identity),
                    event_type=event.type.value,
                )
                if not self._hand_off(session, event):
                    break
            if not session.cancelled:
                logger.error("Pod watch ended unexpectedly")
        except Exception as e:
            if not session.cancelled:
                logger.exception("Pod tracking failed", error=str(e))
        finally:
            session.watcher.stop()
            self._release(session)
            session.done.set()
            logger.info("Stopped tracking pods")

    def _hand_off(self, session: _Session, event: PodEvent) -> bool:
        """Wait for the consumer to take an event.

        Returns
        -------
        bool
            `False` if tracking was cancelled before the event was taken.
        """
        while not session.cancelled:
            try:
                session.handoff.put(event, timeout=self._poll_interval)
            except queue.Full:
                continue
            return True
        return False
