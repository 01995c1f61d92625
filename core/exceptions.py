"""Error kinds raised by the live synchronization core."""

from pathlib import Path


class LiveTreeError(Exception):
    """Base class for livetree errors."""


class InvalidRootError(LiveTreeError):
    """Raised when a path cannot become the watched root."""

    def __init__(self, path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"{reason}: {path}")


class RootNotFoundError(InvalidRootError):
    def __init__(self, path):
        super().__init__(path, "Directory not found")


class RootNotADirectoryError(InvalidRootError):
    def __init__(self, path):
        super().__init__(path, "Not a directory")


class WatchStartError(LiveTreeError):
    """Raised when the OS refuses a watch subscription."""


class DeliveryFailure(LiveTreeError):
    """Raised when a message cannot be queued for a client."""

    def __init__(self, client_id: str, reason: str):
        self.client_id = client_id
        self.reason = reason
        super().__init__(f"Delivery to {client_id} failed: {reason}")
