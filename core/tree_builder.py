"""
Directory tree snapshots.

``build_tree`` walks a root directory and returns an immutable ``TreeNode``
tree. Every call owns its own state (the visited set used to break symlink
cycles), so concurrent builds on the same root never interfere.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Set, Tuple

from config.settings import MAX_TREE_DEPTH
from core.exceptions import RootNotADirectoryError, RootNotFoundError
from utils.ignore_handler import IgnoreHandler

logger = logging.getLogger(__name__)

# Relative path of the root node itself
ROOT_RELATIVE_PATH = ""


class NodeKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class TreeNode:
    """One filesystem entry at snapshot time."""

    name: str
    relative_path: str
    kind: NodeKind
    size_bytes: Optional[int] = None
    children: Optional[Tuple["TreeNode", ...]] = None

    @property
    def is_directory(self) -> bool:
        return self.kind is NodeKind.DIRECTORY

    def iter_nodes(self) -> Iterator["TreeNode"]:
        """Yield this node and all of its descendants, depth first."""
        yield self
        for child in self.children or ():
            yield from child.iter_nodes()

    def find(self, relative_path: str) -> Optional["TreeNode"]:
        """Return the descendant at ``relative_path`` or None."""
        for node in self.iter_nodes():
            if node.relative_path == relative_path:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation used by the structure message."""
        node = {
            'name': self.name,
            'path': self.relative_path or '/',
            'type': self.kind.value,
            'size': self.size_bytes,
        }
        if self.is_directory:
            node['children'] = [child.to_dict() for child in self.children or ()]
        return node


def validate_root(root_path) -> Path:
    """
    Resolve ``root_path`` and check that it is an existing directory.

    Raises:
        RootNotFoundError: the path does not exist
        RootNotADirectoryError: the path exists but is not a directory
    """
    path = Path(root_path).expanduser()
    try:
        resolved = path.resolve(strict=True)
    except (FileNotFoundError, RuntimeError):
        raise RootNotFoundError(path)
    except OSError as e:
        logger.warning(f"[TREE] Cannot resolve {path}: {e}")
        raise RootNotFoundError(path)

    if not resolved.is_dir():
        raise RootNotADirectoryError(resolved)
    return resolved


def build_tree(root_path, ignore_handler: Optional[IgnoreHandler] = None,
               max_depth: int = MAX_TREE_DEPTH) -> TreeNode:
    """
    Build a snapshot of the directory tree under ``root_path``.

    Ignored entries are skipped before they are stat'ed or descended into.
    Entries that vanish or cannot be read during the walk are omitted and the
    walk carries on with their siblings. Directory symlinks are followed
    unless their target was already visited in this build, in which case the
    node is kept as a leaf.

    Args:
        root_path: Existing directory to snapshot
        ignore_handler: Ignore rules (defaults to the static list from settings)
        max_depth: Directories deeper than this are returned without children

    Returns:
        TreeNode: The root directory node

    Raises:
        RootNotFoundError, RootNotADirectoryError: the root itself is unusable
    """
    root = validate_root(root_path)
    if ignore_handler is None:
        ignore_handler = IgnoreHandler(root)

    visited: Set[str] = {os.path.realpath(root)}
    children = _walk_directory(root, ROOT_RELATIVE_PATH, ignore_handler, visited, 1, max_depth)
    return TreeNode(
        name=root.name or str(root),
        relative_path=ROOT_RELATIVE_PATH,
        kind=NodeKind.DIRECTORY,
        children=children,
    )


def _join(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


def _walk_directory(directory: Path, relative_path: str, ignore_handler: IgnoreHandler,
                    visited: Set[str], depth: int, max_depth: int) -> Tuple[TreeNode, ...]:
    try:
        names = os.listdir(directory)
    except OSError as e:
        logger.warning(f"[TREE] Cannot list {directory}: {e}")
        return ()

    nodes = []
    for name in names:
        if ignore_handler.is_ignored_name(name):
            continue

        entry_path = directory / name
        entry_rel = _join(relative_path, name)
        try:
            # stat() follows symlinks, so a link to a directory is a directory
            entry_stat = entry_path.stat()
        except OSError as e:
            logger.warning(f"[TREE] Skipping {entry_rel}: {e}")
            continue

        if stat.S_ISDIR(entry_stat.st_mode):
            canonical = os.path.realpath(entry_path)
            if canonical in visited:
                logger.debug(f"[TREE] Cycle at {entry_rel}, not descending")
                grandchildren: Tuple[TreeNode, ...] = ()
            elif depth >= max_depth:
                logger.warning(f"[TREE] Depth limit {max_depth} reached at {entry_rel}")
                grandchildren = ()
            else:
                visited.add(canonical)
                grandchildren = _walk_directory(entry_path, entry_rel, ignore_handler,
                                                visited, depth + 1, max_depth)
            nodes.append(TreeNode(name, entry_rel, NodeKind.DIRECTORY, None, grandchildren))
        else:
            nodes.append(TreeNode(name, entry_rel, NodeKind.FILE, entry_stat.st_size))

    return tuple(nodes)
