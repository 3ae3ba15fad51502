"""Test fixtures for pod metadata exporter tests."""

import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
import structlog
from kubernetes.client import ApiClient
from structlog.stdlib import BoundLogger

from podmeta.services.tracker import PodTracker
from podmeta.storage.metadata import PodMetadataWriter

from .support.clock import MockClock
from .support.kubernetes import MockWatchApi, patch_watch


@pytest.fixture
def logger() -> BoundLogger:
    return structlog.get_logger(__name__)


@pytest.fixture
def mock_watch(monkeypatch: pytest.MonkeyPatch) -> Iterator[MockWatchApi]:
    """Mock Kubernetes watch API, closed at the end of the test.

    Closing it ends any idle watch left blocked by the test.
    """
    api = patch_watch(monkeypatch)
    yield api
    api.close()


@pytest.fixture
def stop() -> Iterator[threading.Event]:
    """Stop signal that is always set at the end of the test.

    Setting it on teardown ends any tracking session the test left running.
    """
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def meta_dir(tmp_path: Path) -> Path:
    path = tmp_path / "kube_meta"
    path.mkdir()
    return path


@pytest.fixture
def writer(
    meta_dir: Path, logger: BoundLogger, clock: MockClock
) -> PodMetadataWriter:
    return PodMetadataWriter(
        meta_dir, timedelta(seconds=3), logger, clock=clock
    )


@pytest.fixture
def tracker(mock_watch: MockWatchApi, logger: BoundLogger) -> PodTracker:
    return PodTracker(
        ApiClient(),
        logger,
        reconnect_timeout=timedelta(seconds=30),
        backoff_initial=timedelta(milliseconds=5),
        backoff_max=timedelta(milliseconds=20),
        poll_interval=timedelta(milliseconds=10),
        stop_timeout=timedelta(milliseconds=50),
    )
