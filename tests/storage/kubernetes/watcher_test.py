"""Tests for the Kubernetes watch wrapper."""

import threading
import time
from datetime import timedelta

import pytest
from kubernetes.client import ApiClient, CoreV1Api, V1Pod
from structlog.stdlib import BoundLogger
from urllib3.exceptions import (
    MaxRetryError,
    NewConnectionError,
    ProtocolError,
    ReadTimeoutError,
)

from podmeta.exceptions import KubernetesError
from podmeta.models.domain.kubernetes import WatchEventType
from podmeta.storage.kubernetes.watcher import (
    KubernetesWatcher,
    WatchEvent,
    is_connection_refused,
)

from ...support.kubernetes import (
    MockWatchApi,
    bookmark_event,
    error_event,
    node_event,
    pod_event,
    refused_error,
)


@pytest.fixture
def watcher(
    mock_watch: MockWatchApi, logger: BoundLogger
) -> KubernetesWatcher[V1Pod]:
    api = CoreV1Api(ApiClient())
    return KubernetesWatcher(
        method=api.list_pod_for_all_namespaces,
        object_type=V1Pod,
        kind="Pod",
        node="node-1",
        timeout=timedelta(seconds=30),
        backoff_initial=timedelta(milliseconds=1),
        backoff_max=timedelta(milliseconds=5),
        logger=logger,
    )


def take(
    watcher: KubernetesWatcher[V1Pod], count: int
) -> list[WatchEvent[V1Pod]]:
    """Read some events from a watcher, then stop it."""
    events = []
    for event in watcher.watch():
        events.append(event)
        if len(events) == count:
            watcher.stop()
    return events


def test_is_connection_refused() -> None:
    assert is_connection_refused(ConnectionRefusedError())
    assert is_connection_refused(refused_error())
    assert not is_connection_refused(ValueError("nope"))
    assert not is_connection_refused(
        MaxRetryError(
            None,  # type: ignore[arg-type]
            "/api/v1/pods",
            reason=TimeoutError("timed out"),
        )
    )

    # urllib3 chains the underlying socket error onto its own exception.
    try:
        try:
            raise ConnectionRefusedError(111, "Connection refused")
        except ConnectionRefusedError as e:
            raise NewConnectionError(None, "Failed to connect") from e
    except NewConnectionError as e:
        assert is_connection_refused(e)


def test_arguments(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(pod_event("ADDED", "default", "nginx"))
    events = take(watcher, 1)

    assert len(events) == 1
    assert events[0].action == WatchEventType.ADDED
    assert events[0].object.metadata.name == "nginx"
    assert events[0].raw_object["metadata"]["namespace"] == "default"
    assert mock_watch.watches[0].return_type is V1Pod
    assert mock_watch.calls[0].method == "list_pod_for_all_namespaces"
    assert mock_watch.calls[0].kwargs == {
        "field_selector": "spec.nodeName=node-1",
        "timeout_seconds": 30,
        "allow_watch_bookmarks": True,
    }


def test_skips_unexpected(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(
        bookmark_event("100"),
        node_event("node-1"),
        {"type": "UNKNOWN", "object": None, "raw_object": {}},
        pod_event("DELETED", "default", "nginx"),
    )
    events = take(watcher, 1)

    assert len(events) == 1
    assert events[0].action == WatchEventType.DELETED


def test_reopen_after_close(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(
        pod_event("ADDED", "default", "nginx"),
        close=True,
        resource_version="1234",
    )
    mock_watch.add_session(pod_event("MODIFIED", "default", "nginx"))
    events = take(watcher, 2)

    assert [e.action for e in events] == [
        WatchEventType.ADDED,
        WatchEventType.MODIFIED,
    ]
    assert len(mock_watch.calls) == 2
    assert "resource_version" not in mock_watch.calls[0].kwargs
    assert mock_watch.calls[1].kwargs["resource_version"] == "1234"


def test_expired(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(
        pod_event("ADDED", "default", "nginx"),
        close=True,
        resource_version="1234",
    )
    mock_watch.add_session(error_event(410, "Expired", "too old"))
    mock_watch.add_session(error_event(410, "Expired", "still too old"))
    mock_watch.add_session(pod_event("ADDED", "default", "other"))
    events = take(watcher, 2)

    assert [e.object.metadata.name for e in events] == ["nginx", "other"]
    assert len(mock_watch.calls) == 4
    assert mock_watch.calls[1].kwargs["resource_version"] == "1234"
    assert "resource_version" not in mock_watch.calls[2].kwargs
    assert "resource_version" not in mock_watch.calls[3].kwargs


def test_connection_refused(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(refused_error())
    mock_watch.add_session(refused_error())
    mock_watch.add_session(pod_event("ADDED", "default", "nginx"))
    events = take(watcher, 1)

    assert len(events) == 1
    assert len(mock_watch.calls) == 3


def test_fatal_error(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(error_event(403, "Forbidden", "not allowed"))
    with pytest.raises(KubernetesError) as excinfo:
        take(watcher, 1)

    assert excinfo.value.status == 403
    assert excinfo.value.node == "node-1"
    assert excinfo.value.sentry_tags() == {
        "status": "403",
        "kind": "Pod",
        "node": "node-1",
    }
    assert "Forbidden: not allowed" in str(excinfo.value)


def test_other_connection_error(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(OSError("No route to host"))
    with pytest.raises(KubernetesError) as excinfo:
        take(watcher, 1)
    assert "No route to host" in str(excinfo.value)



def test_connection_lost(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(
        pod_event("ADDED", "default", "nginx", resource_version="10"),
        ProtocolError("Connection broken: IncompleteRead"),
    )
    mock_watch.add_session(
        pod_event("ADDED", "default", "other", resource_version="11"),
        ReadTimeoutError(
            None,  # type: ignore[arg-type]
            "/api/v1/pods",
            "Read timed out.",
        ),
    )
    mock_watch.add_session(pod_event("DELETED", "default", "nginx"))
    events = take(watcher, 3)

    assert [e.action for e in events] == [
        WatchEventType.ADDED,
        WatchEventType.ADDED,
        WatchEventType.DELETED,
    ]
    assert len(mock_watch.calls) == 3
    assert mock_watch.calls[1].kwargs["resource_version"] == "10"
    assert mock_watch.calls[2].kwargs["resource_version"] == "11"


def test_connection_lost_while_connecting(
    watcher: KubernetesWatcher[V1Pod], mock_watch: MockWatchApi
) -> None:
    mock_watch.add_session(ProtocolError("Connection aborted."))
    mock_watch.add_session(pod_event("ADDED", "default", "nginx"))
    events = take(watcher, 1)

    assert len(events) == 1
    assert len(mock_watch.calls) == 2
    assert "resource_version" not in mock_watch.calls[1].kwargs


def test_stop_during_backoff(
    mock_watch: MockWatchApi, logger: BoundLogger
) -> None:
    api = CoreV1Api(ApiClient())
    watcher = KubernetesWatcher(
        method=api.list_pod_for_all_namespaces,
        object_type=V1Pod,
        kind="Pod",
        timeout=timedelta(seconds=30),
        backoff_initial=timedelta(seconds=10),
        backoff_max=timedelta(minutes=1),
        logger=logger,
    )
    for _ in range(50):
        mock_watch.add_session(refused_error())

    timer = threading.Timer(0.05, watcher.stop)
    timer.start()
    try:
        start = time.monotonic()
        assert list(watcher.watch()) == []
        assert time.monotonic() - start < 5
    finally:
        timer.cancel()
    assert watcher.stopped
    assert len(mock_watch.calls) < 50
