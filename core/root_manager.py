"""
Root Manager

Owns the active root, its watch session and the recent-roots list. All
state changes go through one command queue consumed by a single task, so
root switches, watcher-triggered rebuilds and per-client snapshots never
interleave. Tree builds run in a worker thread; the Broadcast Hub keeps
delivering while a slow walk is in progress.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from config.settings import WATCH_MAX_RETRIES
from core.exceptions import InvalidRootError, LiveTreeError, WatchStartError
from core.tree_builder import TreeNode, build_tree, validate_root
from services.broadcast_hub import BroadcastHub, error_message, file_change_message, structure_message
from utils.file_watcher import ChangeSignal, WatchSession
from utils.ignore_handler import IgnoreHandler
from utils.recent_roots import RecentRootsList

logger = logging.getLogger(__name__)


class RootState(str, Enum):
    NO_ROOT_SELECTED = "no_root_selected"
    ROOT_ACTIVE = "root_active"


@dataclass(frozen=True)
class SwitchResult:
    root: Path
    session_id: int
    watching: bool


@dataclass
class _Command:
    kind: str
    payload: Any = None
    future: Optional[asyncio.Future] = None


class RootManager:
    """Serialized owner of the watched root."""

    def __init__(self, hub: BroadcastHub, recent: Optional[RecentRootsList] = None,
                 session_factory: Callable[..., WatchSession] = WatchSession,
                 ignore_patterns: Optional[Iterable[str]] = None,
                 max_watch_retries: int = WATCH_MAX_RETRIES):
        """
        Args:
            hub: Where snapshots and change notices are delivered
            recent: Recent roots list to update on every successful switch
            session_factory: Called as ``factory(root, ignore_handler=...)``
            ignore_patterns: Static ignore patterns (settings default when None)
            max_watch_retries: Automatic watch restarts after a watch error
        """
        self.hub = hub
        self.session_factory = session_factory
        self.ignore_patterns = list(ignore_patterns) if ignore_patterns is not None else None
        self.max_watch_retries = max_watch_retries

        self._recent = recent or RecentRootsList()
        self._root: Optional[Path] = None
        self._ignore_handler: Optional[IgnoreHandler] = None
        self._session: Optional[WatchSession] = None
        self._forwarder: Optional[asyncio.Task] = None
        self._watch_retries = 0

        self._commands: Optional[asyncio.Queue] = None
        self._runner: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Read-only views (values, never live references)
    # ------------------------------------------------------------------

    def current_root(self) -> Optional[Path]:
        return self._root

    def get_recent(self) -> List[str]:
        return self._recent.to_list()

    @property
    def state(self) -> RootState:
        return RootState.NO_ROOT_SELECTED if self._root is None else RootState.ROOT_ACTIVE

    @property
    def watching(self) -> bool:
        return self._session is not None and self._session.active

    @property
    def session(self) -> Optional[WatchSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, initial_root=None):
        """Start the command task and optionally activate an initial root."""
        if self.is_running:
            return
        self._commands = asyncio.Queue()
        self._runner = asyncio.create_task(self._run(), name="root-manager")
        logger.info("[ROOT] Root manager started")

        if initial_root is not None:
            try:
                await self.switch_root(initial_root)
            except InvalidRootError as e:
                logger.error(f"[ROOT] Initial root rejected: {e}")

    async def shutdown(self):
        """Stop the watch session and the command task."""
        self._stop_session()
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        if self._commands is not None:
            while not self._commands.empty():
                command = self._commands.get_nowait()
                if command.future is not None and not command.future.done():
                    command.future.cancel()
        logger.info("[ROOT] Root manager stopped")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def switch_root(self, new_path) -> SwitchResult:
        """
        Make ``new_path`` the watched root.

        Raises:
            InvalidRootError: the path is missing or not a directory; the
                current root is left unchanged
        """
        return await self._submit("switch", new_path)

    async def refresh(self):
        """Rebuild the snapshot and broadcast it to every client."""
        await self._submit("refresh")

    async def send_snapshot(self, client_id: str):
        """Build the current snapshot and send it to one client."""
        await self._submit("snapshot", client_id)

    async def restart_watch(self) -> SwitchResult:
        """
        Start a fresh watch session on the current root (after a watch error).

        Raises:
            LiveTreeError: no root is selected
            WatchStartError: the OS refused the new subscription; the
                usual retry cycle still runs in the background
        """
        return await self._submit("restart")

    async def _submit(self, kind: str, payload: Any = None):
        if not self.is_running:
            raise LiveTreeError("Root manager is not running")
        future = asyncio.get_running_loop().create_future()
        self._commands.put_nowait(_Command(kind, payload, future))
        return await future

    async def _run(self):
        handlers = {
            "switch": self._handle_switch,
            "refresh": self._handle_refresh,
            "snapshot": self._handle_snapshot,
            "restart": self._handle_restart,
            "change": self._handle_change,
        }
        while True:
            command = await self._commands.get()
            future = command.future
            if future is not None and future.done():
                # Caller went away before we got to it
                continue
            try:
                result = await handlers[command.kind](command.payload)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as e:
                if future is not None and not future.done():
                    future.set_exception(e)
                else:
                    logger.error(f"[ROOT] Error handling {command.kind}: {e}", exc_info=True)
            else:
                if future is not None and not future.done():
                    future.set_result(result)

    # ------------------------------------------------------------------
    # Handlers (only ever run on the command task)
    # ------------------------------------------------------------------

    async def _handle_switch(self, new_path) -> SwitchResult:
        new_root = await asyncio.to_thread(validate_root, new_path)
        ignore_handler = await asyncio.to_thread(IgnoreHandler, new_root, self.ignore_patterns)
        logger.info(f"[ROOT] Switching root: {self._root} -> {new_root}")

        self._stop_session()
        self._root = new_root
        self._ignore_handler = ignore_handler
        self._watch_retries = 0
        self._start_session()

        tree = await self._build()
        self._recent.promote(new_root)
        if tree is not None:
            self.hub.broadcast(structure_message(tree))
        return SwitchResult(new_root, self._session.id, self._session.active)

    async def _handle_refresh(self, _payload=None):
        if self._root is None:
            return
        tree = await self._build()
        if tree is not None:
            self.hub.broadcast(structure_message(tree))

    async def _handle_snapshot(self, client_id: str):
        if self._root is None:
            self.hub.send_to(client_id, error_message('No project selected'))
            return
        tree = await self._build(broadcast_errors=False)
        if tree is None:
            self.hub.send_to(client_id, error_message('Failed to load project structure'))
        else:
            self.hub.send_to(client_id, structure_message(tree))

    async def _handle_restart(self, _payload=None) -> SwitchResult:
        if self._root is None:
            raise LiveTreeError("No project selected")
        logger.info(f"[ROOT] Restarting watch on {self._root}")
        self._stop_session()
        self._watch_retries = 0
        self._start_session()
        await self._handle_refresh()
        if not self._session.active:
            raise WatchStartError(f"Could not watch {self._root}")
        return SwitchResult(self._root, self._session.id, self._session.active)

    async def _handle_change(self, signal: ChangeSignal):
        session = self._session
        if session is None or signal.session_id != session.id or signal.root_path != self._root:
            logger.debug(f"[ROOT] Discarding stale signal from session {signal.session_id}")
            return

        if signal.is_error:
            self.hub.broadcast(error_message(f"Watch error: {signal.error}"))
            self._stop_session()
            if self._watch_retries < self.max_watch_retries:
                self._watch_retries += 1
                logger.warning(f"[ROOT] Retrying watch on {self._root} "
                               f"({self._watch_retries}/{self.max_watch_retries})")
                self._start_session()
            else:
                logger.error(f"[ROOT] Giving up watching {self._root}; a new switch or restart is required")
            return

        self.hub.broadcast(file_change_message(signal.path, signal.count))
        tree = await self._build()
        if tree is not None:
            self.hub.broadcast(structure_message(tree))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _build(self, broadcast_errors: bool = True) -> Optional[TreeNode]:
        root = self._root
        try:
            return await asyncio.to_thread(build_tree, root, self._ignore_handler)
        except InvalidRootError as e:
            logger.error(f"[ROOT] Snapshot of {root} failed: {e}")
            if broadcast_errors:
                self.hub.broadcast(error_message(f"Failed to load project structure: {e.reason}"))
            return None

    def _start_session(self):
        session = self.session_factory(self._root, ignore_handler=self._ignore_handler)
        session.start()
        self._session = session
        self._forwarder = asyncio.create_task(self._forward(session), name=f"forward-{session.id}")

    def _stop_session(self):
        session, self._session = self._session, None
        forwarder, self._forwarder = self._forwarder, None
        if session is not None:
            session.stop()
        if forwarder is not None:
            forwarder.cancel()

    async def _forward(self, session: WatchSession):
        async for signal in session.signals():
            self._commands.put_nowait(_Command("change", signal))
