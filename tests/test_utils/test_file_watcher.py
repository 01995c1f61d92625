"""
Tests for the change watcher.

Covers event filtering in TreeChangeHandler and the coalescing, stop and
failure behaviour of WatchSession. Unit tests use a fake observer and feed
raw changes directly; the integration test uses real watchdog notifications.
"""

import asyncio
from types import SimpleNamespace

import pytest
from watchdog.events import (
    DirCreatedEvent, DirModifiedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent,
)

from conftest import FakeObserver, RefusingObserver
from utils.file_watcher import (
    MULTIPLE_CHANGES, RawChange, SignalKind, TreeChangeHandler, WatchSession,
)
from utils.ignore_handler import IgnoreHandler


def make_session(root, **kwargs):
    kwargs.setdefault("debounce", 0.05)
    kwargs.setdefault("max_coalesce", 0.5)
    kwargs.setdefault("observer_factory", FakeObserver)
    return WatchSession(root, **kwargs)


async def next_signal(signals, timeout=1.0):
    return await asyncio.wait_for(signals.__anext__(), timeout)


class TestTreeChangeHandler:
    """Filtering of raw watchdog events."""

    def _handler(self, root):
        received = []
        handler = TreeChangeHandler(root, IgnoreHandler(root), received.append)
        return handler, received

    @pytest.mark.unit
    def test_file_events_are_forwarded_relative(self, temp_dir):
        handler, received = self._handler(temp_dir)

        handler.dispatch(FileModifiedEvent(str(temp_dir / "sub" / "a.txt")))
        handler.dispatch(FileCreatedEvent(str(temp_dir / "b.txt")))

        assert received == [RawChange("modified", "sub/a.txt"), RawChange("created", "b.txt")]

    @pytest.mark.unit
    def test_ignored_subtrees_are_dropped(self, temp_dir):
        handler, received = self._handler(temp_dir)

        handler.dispatch(FileModifiedEvent(str(temp_dir / "node_modules" / "x.js")))
        handler.dispatch(FileModifiedEvent(str(temp_dir / "pkg" / ".git" / "index")))

        assert received == []

    @pytest.mark.unit
    def test_directory_modified_is_dropped(self, temp_dir):
        handler, received = self._handler(temp_dir)

        handler.dispatch(DirModifiedEvent(str(temp_dir / "sub")))
        handler.dispatch(DirCreatedEvent(str(temp_dir / "new")))

        assert received == [RawChange("created", "new")]

    @pytest.mark.unit
    def test_move_reports_both_ends(self, temp_dir):
        handler, received = self._handler(temp_dir)

        handler.dispatch(FileMovedEvent(str(temp_dir / "old.txt"), str(temp_dir / "new.txt")))

        assert [change.path for change in received] == ["old.txt", "new.txt"]

    @pytest.mark.unit
    def test_move_into_ignored_dir_keeps_source(self, temp_dir):
        handler, received = self._handler(temp_dir)

        handler.dispatch(FileMovedEvent(str(temp_dir / "a.js"), str(temp_dir / "node_modules" / "a.js")))

        assert [change.path for change in received] == ["a.js"]

    @pytest.mark.unit
    def test_open_close_and_outside_paths_are_dropped(self, temp_dir):
        handler, received = self._handler(temp_dir / "root")

        handler.on_any_event(SimpleNamespace(event_type="opened", is_directory=False,
                                             src_path=str(temp_dir / "root" / "a.txt")))
        handler.on_any_event(SimpleNamespace(event_type="modified", is_directory=False,
                                             src_path=str(temp_dir / "elsewhere.txt")))

        assert received == []


class TestWatchSession:
    """Coalescing and lifecycle of one session."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_schedules_recursive_watch(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        try:
            assert session.active is True
            handler, path, recursive = session.observer.scheduled[0]
            assert handler is session.handler
            assert path == str(temp_dir)
            assert recursive is True
        finally:
            session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_burst_coalesces_into_one_signal(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        signals = session.signals()
        try:
            for i in range(100):
                session.publish_raw(RawChange("modified", f"file{i}.txt"))

            signal = await next_signal(signals)

            assert signal.kind is SignalKind.CHANGE
            assert signal.count == 100
            assert signal.path == MULTIPLE_CHANGES
            assert signal.session_id == session.id
            assert signal.root_path == temp_dir
            assert signal.window_opened_at > 0

            with pytest.raises(asyncio.TimeoutError):
                await next_signal(signals, timeout=0.3)
        finally:
            session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_single_path_is_carried(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        signals = session.signals()
        try:
            for _ in range(5):
                session.publish_raw(RawChange("modified", "notes/todo.md"))

            signal = await next_signal(signals)

            assert signal.path == "notes/todo.md"
            assert signal.count == 5
        finally:
            session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_separate_bursts_give_separate_signals(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        signals = session.signals()
        try:
            session.publish_raw(RawChange("created", "a.txt"))
            first = await next_signal(signals)

            session.publish_raw(RawChange("created", "b.txt"))
            second = await next_signal(signals)

            assert (first.path, second.path) == ("a.txt", "b.txt")
        finally:
            session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_continuous_storm_is_bounded_by_max_window(self, temp_dir):
        session = make_session(temp_dir, debounce=0.1, max_coalesce=0.2)
        session.start()
        signals = session.signals()

        async def storm():
            for i in range(40):
                session.publish_raw(RawChange("modified", "hot.txt"))
                await asyncio.sleep(0.02)

        storm_task = asyncio.create_task(storm())
        try:
            # The storm lasts ~0.8s, well past one 0.2s window
            signal = await next_signal(signals, timeout=0.6)
            assert signal.count < 40
        finally:
            storm_task.cancel()
            session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_drops_in_flight_events(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        signals = session.signals()
        observer = session.observer

        session.publish_raw(RawChange("modified", "a.txt"))
        session.stop()

        assert session.active is False
        assert observer.stopped is True
        with pytest.raises(StopAsyncIteration):
            await next_signal(signals)

        # Publishing after stop is a no-op
        session.publish_raw(RawChange("modified", "b.txt"))
        await asyncio.sleep(0.1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, temp_dir):
        session = make_session(temp_dir)
        session.start()

        session.stop()
        session.stop()

        assert session.active is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_restart(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        session.stop()

        with pytest.raises(RuntimeError):
            session.start()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refused_subscription_reports_watch_error_once(self, temp_dir):
        session = make_session(temp_dir, observer_factory=RefusingObserver)
        session.start()
        signals = session.signals()

        signal = await next_signal(signals)

        assert signal.kind is SignalKind.WATCH_ERROR
        assert "inotify" in signal.error
        assert session.active is False
        with pytest.raises(StopAsyncIteration):
            await next_signal(signals)
        session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_observer_death_reports_watch_error(self, temp_dir):
        session = make_session(temp_dir)
        session.start()
        signals = session.signals()

        session.observer._alive = False

        signal = await next_signal(signals, timeout=2.0)

        assert signal.is_error
        assert session.active is False
        session.stop()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signals_before_start(self, temp_dir):
        session = make_session(temp_dir)

        with pytest.raises(RuntimeError):
            await session.signals().__anext__()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_real_filesystem_change_is_signalled(temp_dir):
    """End to end with watchdog's native observer."""
    session = WatchSession(temp_dir, debounce=0.1, max_coalesce=1.0)
    session.start()
    signals = session.signals()
    try:
        await asyncio.sleep(0.2)
        (temp_dir / "fresh.txt").write_text("hello")

        signal = await next_signal(signals, timeout=5.0)

        assert signal.kind is SignalKind.CHANGE
        assert signal.path in ("fresh.txt", MULTIPLE_CHANGES)
    finally:
        session.stop()
