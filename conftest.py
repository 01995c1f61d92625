"""
Pytest configuration and shared fixtures for the livetree test suite.

This module provides:
- Temporary directory fixtures, including the sample project tree
- A fake watchdog observer and a recording watch-session factory
- A fake client transport for Broadcast Hub and Root Manager tests
- FastAPI test client wired to the sample tree
"""

import asyncio
import json
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import Generator

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from utils.file_watcher import WatchSession


@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp).resolve()
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def sample_tree(temp_dir: Path) -> Path:
    """
    proj/
      a.txt            (10 bytes)
      sub/b.txt        (20 bytes)
      node_modules/x.js
    """
    proj = temp_dir / "proj"
    (proj / "sub").mkdir(parents=True)
    (proj / "node_modules").mkdir()
    (proj / "a.txt").write_bytes(b"x" * 10)
    (proj / "sub" / "b.txt").write_bytes(b"y" * 20)
    (proj / "node_modules" / "x.js").write_text("module.exports = 1;\n")
    return proj


@pytest.fixture
def other_tree(temp_dir: Path) -> Path:
    other = temp_dir / "other"
    other.mkdir()
    (other / "readme.md").write_text("# other\n")
    return other


class FakeObserver:
    """Stands in for a watchdog observer; nothing touches the OS."""

    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False
        self._alive = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append((handler, path, recursive))

    def start(self):
        self.started = True
        self._alive = True

    def stop(self):
        self.stopped = True
        self._alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self._alive


class RefusingObserver(FakeObserver):
    """Observer whose subscription is refused, like an exhausted inotify limit."""

    def schedule(self, handler, path, recursive=False):
        raise OSError(28, "inotify watch limit reached")


def make_session_factory(observer_class=FakeObserver, debounce=0.05, max_coalesce=0.5):
    created = []

    def factory(root, ignore_handler=None):
        session = WatchSession(root, ignore_handler=ignore_handler, debounce=debounce,
                               max_coalesce=max_coalesce, observer_factory=observer_class)
        created.append(session)
        return session

    factory.created = created
    return factory


@pytest.fixture
def session_factory():
    """Watch-session factory backed by FakeObserver; ``factory.created`` lists every session."""
    return make_session_factory()


@pytest.fixture
def refusing_session_factory():
    return make_session_factory(observer_class=RefusingObserver)


class FakeTransport:
    """Records frames sent to a viewer."""

    def __init__(self):
        self.sent = []
        self.closed = False

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self):
        self.closed = True

    @property
    def messages(self):
        return [json.loads(frame) for frame in self.sent]

    def types(self):
        return [message["type"] for message in self.messages]


class BrokenTransport(FakeTransport):
    async def send_text(self, text):
        raise ConnectionResetError("peer went away")


class StalledTransport(FakeTransport):
    async def send_text(self, text):
        await asyncio.Event().wait()


@pytest.fixture
def transport():
    return FakeTransport()


async def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll ``predicate`` on the event loop until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())


@pytest.fixture(scope="function")
def fastapi_client(sample_tree, session_factory):
    """FastAPI test client watching the sample tree through fake observers."""
    from fastapi.testclient import TestClient
    from backend import create_app

    app = create_app(initial_root=sample_tree, session_factory=session_factory)
    with TestClient(app) as client:
        client.session_factory = session_factory
        yield client


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Register custom markers
    config.addinivalue_line("markers", "unit: Unit tests with fakes for the OS and network")
    config.addinivalue_line("markers", "integration: Tests that use real filesystem notifications")
    config.addinivalue_line("markers", "api: HTTP and WebSocket route tests")
