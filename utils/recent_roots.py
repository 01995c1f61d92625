"""Bounded most-recent-first list of previously selected roots."""

from pathlib import Path
from typing import Iterable, List, Optional

from config.settings import RECENT_ROOTS_CAPACITY


class RecentRootsList:
    """Ordered, deduplicated set of root paths, most recent first."""

    def __init__(self, capacity: int = RECENT_ROOTS_CAPACITY, initial: Optional[Iterable[str]] = None):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._paths: List[str] = []
        for path in reversed(list(initial or [])):
            self.promote(path)

    def promote(self, path) -> None:
        """Append-or-promote ``path`` to the front, evicting the oldest beyond capacity."""
        path = str(Path(path))
        if path in self._paths:
            self._paths.remove(path)
        self._paths.insert(0, path)
        del self._paths[self.capacity:]

    def to_list(self) -> List[str]:
        return list(self._paths)

    def __contains__(self, path) -> bool:
        return str(Path(path)) in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def __iter__(self):
        return iter(self.to_list())
