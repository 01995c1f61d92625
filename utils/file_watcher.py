"""
File system change watcher for the active root.
Uses watchdog for recursive change notifications and coalesces bursts of
raw events into a bounded-rate stream of change signals.

Observer callbacks run on watchdog's thread; every raw event is handed to
the event loop with ``call_soon_threadsafe`` and consumed by one coalescing
task per session.
"""

import asyncio
import itertools
import logging
import os
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from config.settings import (
    WATCH_DEBOUNCE_SECONDS, WATCH_LIVENESS_INTERVAL, WATCH_MAX_COALESCE_SECONDS,
    WATCH_POLLING_INTERVAL, WATCH_USE_POLLING,
)
from .ignore_handler import IgnoreHandler

logger = logging.getLogger(__name__)

# Path carried by a signal whose window saw more than one distinct path
MULTIPLE_CHANGES = "*"

# watchdog >= 4 also reports open/close, which never change the tree
_IGNORED_EVENT_TYPES = {"opened", "closed", "closed_no_write"}

_session_ids = itertools.count(1)


class SignalKind(str, Enum):
    CHANGE = "change"
    WATCH_ERROR = "watch_error"


@dataclass(frozen=True)
class RawChange:
    """One filtered watchdog event, path relative to the root."""

    event_type: str
    path: str


@dataclass(frozen=True)
class ChangeSignal:
    """A coalesced 'something changed' notification from one session."""

    session_id: int
    root_path: Path
    kind: SignalKind
    path: Optional[str] = None
    count: int = 0
    window_opened_at: float = 0.0
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.kind is SignalKind.WATCH_ERROR


class TreeChangeHandler(FileSystemEventHandler):
    """Filters watchdog events for one root and forwards them as RawChange."""

    def __init__(self, root_folder: Path, ignore_handler: IgnoreHandler,
                 publish: Callable[[RawChange], None]):
        """
        Args:
            root_folder: The watched root
            ignore_handler: Rules for ignored subtrees under the root
            publish: Called from the observer thread for each kept event
        """
        self.root_folder = Path(root_folder)
        self.ignore_handler = ignore_handler
        self.publish = publish

    def on_any_event(self, event):
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        # A directory's mtime changes whenever a child does; the child event is enough
        if event.is_directory and event.event_type == "modified":
            return

        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            paths.append(dest_path)

        for raw_path in paths:
            relative = self._relative(raw_path)
            if relative is None:
                continue
            if self.ignore_handler.should_ignore(Path(relative)):
                continue
            self.publish(RawChange(event.event_type, relative))

    def _relative(self, raw_path) -> Optional[str]:
        path = Path(os.fsdecode(raw_path))
        try:
            relative = path.relative_to(self.root_folder)
        except ValueError:
            return None
        relative_str = relative.as_posix()
        if relative_str in ("", "."):
            return None
        return relative_str


class WatchSession:
    """
    Watches one root until stopped.

    A session is started once and never restarted; the Root Manager creates
    a new session for every root it activates. ``stop`` releases the OS
    watch before returning and drops anything still in flight.
    """

    def __init__(self, root_path, ignore_handler: Optional[IgnoreHandler] = None,
                 debounce: float = WATCH_DEBOUNCE_SECONDS,
                 max_coalesce: float = WATCH_MAX_COALESCE_SECONDS,
                 use_polling: bool = WATCH_USE_POLLING,
                 observer_factory: Optional[Callable[[], object]] = None):
        self.id = next(_session_ids)
        self.root_path = Path(root_path)
        self.ignore_handler = ignore_handler or IgnoreHandler(self.root_path)
        self.debounce = debounce
        self.max_coalesce = max(max_coalesce, debounce)
        self.use_polling = use_polling
        self.observer_factory = observer_factory or self._create_observer
        self.handler = TreeChangeHandler(self.root_path, self.ignore_handler, self.publish_raw)
        self.active = False
        self.observer = None

        self._started = False
        self._stopped = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._raw: Optional[asyncio.Queue] = None
        self._signals: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return f"<WatchSession {self.id} {self.root_path} {state}>"

    def _create_observer(self):
        """
        Create appropriate observer based on environment.

        Uses PollingObserver when forced by settings or for WSL + DrvFS
        mounts, where inotify does not deliver events.
        """
        if self.use_polling:
            logger.info(f"[WATCHER] Using PollingObserver ({WATCH_POLLING_INTERVAL}s interval)")
            return PollingObserver(timeout=WATCH_POLLING_INTERVAL)

        is_wsl = False
        if sys.platform == 'linux':
            try:
                with open('/proc/version', 'r') as f:
                    version = f.read().lower()
                is_wsl = 'microsoft' in version or 'wsl' in version
            except OSError:
                pass

        if is_wsl and str(self.root_path).startswith('/mnt/'):
            logger.info("[WATCHER] Detected WSL + DrvFS root - using PollingObserver")
            return PollingObserver(timeout=WATCH_POLLING_INTERVAL)
        return Observer()

    def start(self) -> "WatchSession":
        """
        Subscribe to recursive notifications for the root.

        Must be called from the event loop thread. An OS refusal is not
        raised; it is reported as a single WATCH_ERROR signal and the
        session ends inactive.
        """
        if self._started:
            raise RuntimeError(f"WatchSession {self.id} cannot be restarted")
        self._started = True

        self._loop = asyncio.get_running_loop()
        self._raw = asyncio.Queue()
        self._signals = asyncio.Queue()
        self.active = True

        try:
            self.observer = self.observer_factory()
            self.observer.schedule(self.handler, str(self.root_path), recursive=True)
            self.observer.start()
        except OSError as e:
            logger.error(f"[WATCHER] Could not watch {self.root_path}: {e}")
            self._fail(f"Could not watch {self.root_path}: {e}")
            return self

        self._task = self._loop.create_task(self._coalesce(), name=f"watch-session-{self.id}")
        logger.info(f"[WATCHER] Session {self.id} watching {self.root_path}")
        return self

    def stop(self):
        """Release the OS watch and drop pending events and signals."""
        if self._stopped:
            return
        self._stopped = True
        self.active = False

        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._release_observer()
        self._close_queues()
        logger.info(f"[WATCHER] Session {self.id} stopped")

    def publish_raw(self, change: RawChange):
        """Hand a raw change to the coalescer. Safe to call from any thread."""
        loop = self._loop
        if not self.active or loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._enqueue_raw, change)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug(f"[WATCHER] Dropped {change.path}: event loop closed")

    def _enqueue_raw(self, change: RawChange):
        if self.active and self._raw is not None:
            self._raw.put_nowait(change)

    async def signals(self) -> AsyncIterator[ChangeSignal]:
        """
        Yield coalesced signals until the session ends.

        The sequence ends after ``stop`` or after a WATCH_ERROR signal.
        """
        if self._signals is None:
            raise RuntimeError(f"WatchSession {self.id} was never started")
        queue = self._signals
        while True:
            signal = await queue.get()
            if signal is None:
                return
            yield signal

    def _observer_alive(self) -> bool:
        is_alive = getattr(self.observer, "is_alive", None)
        return bool(is_alive()) if callable(is_alive) else True

    async def _coalesce(self):
        loop = asyncio.get_running_loop()
        while self.active:
            try:
                first = await asyncio.wait_for(self._raw.get(), timeout=WATCH_LIVENESS_INTERVAL)
            except asyncio.TimeoutError:
                if self.active and not self._observer_alive():
                    logger.error(f"[WATCHER] Observer for {self.root_path} died")
                    self._fail(f"Watching {self.root_path} stopped unexpectedly")
                continue

            window_opened_at = time.time()
            deadline = loop.time() + self.max_coalesce
            paths = {first.path}
            latest = first
            count = 1

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    change = await asyncio.wait_for(self._raw.get(), timeout=min(self.debounce, remaining))
                except asyncio.TimeoutError:
                    break
                paths.add(change.path)
                latest = change
                count += 1

            if not self.active:
                break

            signal = ChangeSignal(
                session_id=self.id,
                root_path=self.root_path,
                kind=SignalKind.CHANGE,
                path=latest.path if len(paths) == 1 else MULTIPLE_CHANGES,
                count=count,
                window_opened_at=window_opened_at,
            )
            logger.debug(f"[WATCHER] Coalesced {count} events into one signal ({signal.path})")
            self._signals.put_nowait(signal)

    def _fail(self, message: str):
        """Report a watch error once and end the session."""
        if not self.active:
            return
        self.active = False
        self._signals.put_nowait(ChangeSignal(
            session_id=self.id,
            root_path=self.root_path,
            kind=SignalKind.WATCH_ERROR,
            window_opened_at=time.time(),
            error=message,
        ))
        self._signals.put_nowait(None)
        self._release_observer()

    def _release_observer(self):
        observer, self.observer = self.observer, None
        if observer is None:
            return
        try:
            observer.stop()
            if observer.is_alive():
                observer.join()
        except (OSError, RuntimeError) as e:
            logger.warning(f"[WATCHER] Error releasing observer for {self.root_path}: {e}")

    def _close_queues(self):
        if self._raw is not None:
            while not self._raw.empty():
                self._raw.get_nowait()
        if self._signals is not None:
            while not self._signals.empty():
                self._signals.get_nowait()
            self._signals.put_nowait(None)
