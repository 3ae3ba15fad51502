"""Watch a Kubernetes cluster for events."""

import itertools
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Self

from kubernetes.client import ApiException
from kubernetes.watch import Watch
from structlog.stdlib import BoundLogger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    wait_random_exponential,
)
from urllib3.exceptions import HTTPError, ProtocolError, ReadTimeoutError

from ...constants import NODE_FIELD_SELECTOR
from ...exceptions import KubernetesError
from ...models.domain.kubernetes import WatchEventType

__all__ = [
    "KubernetesWatcher",
    "WatchEvent",
    "is_connection_refused",
]

_CONNECTION_LOST = (ProtocolError, ReadTimeoutError)
"""Errors raised when an open watch connection breaks or goes quiet."""


def is_connection_refused(exc: BaseException) -> bool:
    """Whether an exception was caused by a refused connection.

    The Kubernetes client surfaces a refused connection as a urllib3
    ``MaxRetryError`` whose ``reason`` is a connection error chained to the
    underlying `ConnectionRefusedError`, so walk the whole chain.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ConnectionRefusedError):
            return True
        seen.add(id(current))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            current = reason
        else:
            current = current.__cause__ or current.__context__
    return False


def _is_retryable(exc: BaseException) -> bool:
    return is_connection_refused(exc) or isinstance(exc, _CONNECTION_LOST)


@dataclass
class WatchEvent[T]:
    """Parsed event from a Kubernetes watch.

    This model is intended only for use within the Kubernetes storage layer
    and the tracker built on top of it.
    """

    action: WatchEventType
    """Action the event represents."""

    object: T
    """Affected Kubernetes object."""

    raw_object: dict[str, Any]
    """Affected object as the JSON document sent by the API server."""

    @classmethod
    def from_event(cls, event: dict[str, Any], object_type: type[T]) -> Self:
        """Create a `WatchEvent` from a watch event.

        Parameters
        ----------
        event
            Event as returned by the Kubernetes watch API.
        object_type
            Expected type of the object.

        Raises
        ------
        TypeError
            Raised if the type of the object in the watch event was incorrect.
        """
        action = WatchEventType(event["type"])
        obj = event["object"]
        if not isinstance(obj, object_type):
            real_type = type(obj).__name__
            expected_type = object_type.__name__
            msg = f"Watch object was of type {real_type}, not {expected_type}"
            raise TypeError(msg)
        return cls(action=action, object=obj, raw_object=event["raw_object"])


class KubernetesWatcher[T]:
    """Watch Kubernetes for events, reopening the watch as needed.

    This wrapper around the watch API of the Kubernetes client implements
    retries and resource version handling. Expired resource versions (410
    errors) cause the watch to be reopened from the current state. The API
    server closing the watch after ``timeout``, or the connection breaking
    while the watch is open, reopens it from the last seen resource version.
    Connections that are refused or break before the first event are retried
    with randomized exponential backoff. All other errors are raised.

    Bookmarks and objects of an unexpected type are logged and skipped, so
    callers only ever see object changes.

    Parameters
    ----------
    method
        API list method that supports the watch API.
    object_type
        Type of object being watched. Must match the type of object returned
        by the method.
    kind
        Kubernetes kind of object being watched, for error reporting.
    node
        Only watch objects scheduled on this node.
    namespace
        Namespace to watch. Omit when ``method`` lists across all
        namespaces.
    timeout
        Server-side timeout after which the watch is reopened.
    backoff_initial
        Upper bound of the delay before the first connection retry.
    backoff_max
        Ceiling on the delay between connection retries.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        method: Callable[..., Any],
        object_type: type[T],
        kind: str,
        node: str | None = None,
        namespace: str | None = None,
        timeout: timedelta,
        backoff_initial: timedelta,
        backoff_max: timedelta,
        logger: BoundLogger,
    ) -> None:
        self._method = method
        self._type = object_type
        self._kind = kind
        self._node = node
        self._namespace = namespace
        self._backoff_initial = backoff_initial.total_seconds()
        self._backoff_max = backoff_max.total_seconds()
        self._logger = logger
        self._stopped = threading.Event()

        # Build the arguments to the method being watched.
        if node:
            field_selector = NODE_FIELD_SELECTOR.format(node=node)
        else:
            field_selector = None
        args: dict[str, str | int | bool | None] = {
            "field_selector": field_selector,
            "namespace": namespace,
            "timeout_seconds": max(int(timeout.total_seconds()), 1),
            "allow_watch_bookmarks": True,
        }
        self._args = {k: v for k, v in args.items() if v is not None}

        # Otherwise the client guesses the type from the method docstring.
        self._watch = Watch(return_type=object_type)

    @property
    def stopped(self) -> bool:
        """Whether `stop` has been called."""
        return self._stopped.is_set()

    def stop(self) -> None:
        """Stop a watch in progress.

        Safe to call from any thread. A pending retry is abandoned at once.
        A watch waiting on an open connection ends when the next line
        arrives from the server, or when the server-side timeout expires.
        """
        self._stopped.set()
        self._watch.stop()

    def watch(self) -> Iterator[WatchEvent[T]]:
        """Watch Kubernetes for events.

        Yields
        ------
        WatchEvent
            Next change to a watched object.

        Raises
        ------
        KubernetesError
            Raised for errors from the Kubernetes API server that cannot be
            handled by reopening the watch.
        """
        args = self._args.copy()
        while not self.stopped:
            try:
                for event in self._connect_with_retry(args):
                    parsed = self._parse(event)
                    if parsed:
                        yield parsed
                    if self.stopped:
                        break
            except ApiException as e:
                if self.stopped:
                    break
                self._handle_api_exception(e, args)
                continue
            except _CONNECTION_LOST as e:
                if self.stopped:
                    break
                msg = "Watch connection lost, reopening"
                self._logger.warning(msg, error=str(e))
            except (HTTPError, OSError) as e:
                if self.stopped:
                    break
                raise KubernetesError(
                    "Error watching objects",
                    kind=self._kind,
                    namespace=self._namespace,
                    node=self._node,
                    body=str(e),
                ) from e
            else:
                if not self.stopped:
                    self._logger.debug("Watch closed by server, reopening")

            # Resume from the last seen resource version, whether the server
            # closed the watch or the connection dropped.
            if self.stopped:
                break
            resource_version = self._watch.resource_version
            if resource_version:
                args["resource_version"] = resource_version

    def _connect(self, args: dict[str, Any]) -> Iterator[dict[str, Any]]:
        """Open the watch and wait for its first line.

        The client only sends the request once the stream is iterated, so
        connection errors surface when reading the first line.
        """
        if self.stopped:
            return iter(())
        stream = self._watch.stream(self._method, **args)
        first = next(stream, None)
        if first is None:
            return iter(())
        return itertools.chain([first], stream)

    def _connect_with_retry(
        self, args: dict[str, Any]
    ) -> Iterator[dict[str, Any]]:
        """Open the watch, retrying connection failures until stopped.

        A new retry policy is used for every call, so the delay starts again
        from ``backoff_initial`` once a connection succeeds.
        """
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_random_exponential(
                multiplier=self._backoff_initial, max=self._backoff_max
            ),
            stop=self._should_stop,
            sleep=self._stopped.wait,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(self._connect, args)

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        return self.stopped

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = None
        if retry_state.outcome and retry_state.outcome.failed:
            error = str(retry_state.outcome.exception())
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        self._logger.warning(
            "Cannot connect to Kubernetes API, retrying",
            error=error,
            delay=round(delay, 3),
            attempt=retry_state.attempt_number,
        )

    def _handle_api_exception(
        self, exc: ApiException, args: dict[str, Any]
    ) -> None:
        """Prepare to reopen after an expired watch, or raise."""
        if exc.status != 410:
            raise KubernetesError.from_exception(
                "Error watching objects",
                exc,
                kind=self._kind,
                namespace=self._namespace,
                node=self._node,
            ) from exc
        if "resource_version" in args:
            rv = args.pop("resource_version")
            self._logger.info(f"Resource version {rv} expired, retrying watch")
        else:
            # Quiet watches can expire without a resource version too.
            self._logger.info("Watch expired (no resource version), retrying")

    def _parse(self, event: dict[str, Any]) -> WatchEvent[T] | None:
        """Parse one raw watch event, or return `None` to skip it."""
        action = event.get("type")
        if action == WatchEventType.BOOKMARK.value:
            return None
        if action == WatchEventType.ERROR.value:
            obj = event.get("raw_object") or {}
            reason = f"{obj.get('reason')}: {obj.get('message')}"
            self._logger.warning("Error event received", error=reason)
            raise ApiException(status=obj.get("code"), reason=reason)
        try:
            return WatchEvent.from_event(event, self._type)
        except (KeyError, TypeError, ValueError) as e:
            msg = "Ignoring unexpected watch event"
            self._logger.warning(msg, error=str(e))
            return None
