"""
Ignore pattern handler for the watched root.
Combines the static ignore list from settings with an optional
.livetreeignore file at the root (glob patterns, one per line).
"""

import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Optional, Set

from config.settings import IGNORED_NAMES, IGNORE_FILE_NAME

logger = logging.getLogger(__name__)


class IgnoreHandler:
    """Decides whether a path under the root belongs to an ignored subtree."""

    def __init__(self, root_folder: Path, patterns: Optional[Iterable[str]] = None,
                 ignore_file_name: Optional[str] = IGNORE_FILE_NAME):
        """
        Initialize the ignore handler.

        Args:
            root_folder: The watched root; paths are matched relative to it
            patterns: Static patterns (defaults to IGNORED_NAMES from settings)
            ignore_file_name: Name of the optional per-root ignore file, None to disable
        """
        self.root_folder = Path(root_folder)
        self.static_patterns: Set[str] = {self._normalize(p) for p in (IGNORED_NAMES if patterns is None else patterns)}
        self.static_patterns.discard('')
        self.ignore_file = self.root_folder / ignore_file_name if ignore_file_name else None
        self.ignore_patterns: Set[str] = set()
        self.load_ignore_patterns()

    @staticmethod
    def _normalize(pattern: str) -> str:
        # "node_modules/" and "node_modules" mean the same thing here
        return pattern.strip().rstrip('/')

    def load_ignore_patterns(self):
        """(Re)load the pattern set from settings and the root's ignore file."""
        self.ignore_patterns = set(self.static_patterns)

        if self.ignore_file is None or not self.ignore_file.is_file():
            return

        try:
            with open(self.ignore_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    # Skip empty lines and comments
                    if line and not line.startswith('#'):
                        self.ignore_patterns.add(self._normalize(line))
            logger.info(f"[IGNORE] Loaded {len(self.ignore_patterns)} ignore patterns for {self.root_folder}")
        except OSError as e:
            logger.warning(f"[IGNORE] Could not read {self.ignore_file}: {e}")

    def is_ignored_name(self, name: str) -> bool:
        """Check a single entry name against the pattern set."""
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore_patterns)

    def should_ignore(self, file_path: Path) -> bool:
        """
        Check if a path lies inside an ignored subtree of the root.

        Args:
            file_path: Absolute path, or a path relative to the root

        Returns:
            bool: True if the path or any of its ancestors below the root is ignored
        """
        file_path = Path(file_path)
        if file_path.is_absolute():
            try:
                rel_path = file_path.relative_to(self.root_folder)
            except ValueError:
                # Outside the root, nothing to ignore
                return False
        else:
            rel_path = file_path

        return any(self.is_ignored_name(part) for part in rel_path.parts)
