"""
Error kinds raised by the sync engine.

Store and channel failures are converted into one of these at the backend
boundary, so nothing above ``backend`` needs to know about Redis.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for every error the engine surfaces."""

    # Fatal kinds end the current room session; the composing layer redirects.
    redirect = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class RoomNotFound(SyncError):
    """The requested room does not exist in the store."""

    redirect = True


class StoreWriteFailed(SyncError):
    """The store rejected a write. Recoverable; never retried automatically."""


class StoreReadFailed(SyncError):
    """A fetch against the store failed."""

    redirect = True


class NoIdentity(SyncError):
    """No display name has been set for this session."""

    redirect = True


class ChannelDisconnected(SyncError):
    """The change notification transport dropped. Recovered inside the channel."""


class AudioUnavailable(SyncError):
    """Alert playback could not be unlocked or replayed. Degrades to silent mode."""


class InvalidInput(SyncError):
    """A caller-supplied value was rejected before reaching the store."""
