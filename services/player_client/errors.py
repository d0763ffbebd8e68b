"""Errors raised by the player client."""

DEFAULT_ACCESS_DENIED_MESSAGE = "Access denied by video provider"


class PlayerError(Exception):
    """Base class for player client errors."""


class AccessDeniedError(PlayerError):
    """The resolution backend answered 403 (regional or ownership block)."""

    def __init__(self, message: str = DEFAULT_ACCESS_DENIED_MESSAGE, status: int = 403):
        super().__init__(message)
        self.message = message
        self.status = status


class StorageError(PlayerError):
    """Local storage is unavailable, full, or unreadable."""
