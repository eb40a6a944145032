"""
Notification gate: decides whether an incoming message should raise a local
alert, and owns the alert resource that has to be unlocked before first use.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from errors import AudioUnavailable
from logging_config import get_logger
from schemas.rooms import Message

logger = get_logger(__name__)


@dataclass
class NotificationState:
    enabled: bool = False
    primed: bool = False


class AlertResource(Protocol):
    """A preloadable, replayable alert. Both calls may fail."""

    async def unlock(self) -> None: ...

    async def play(self) -> None: ...


class SilentAlert:
    """Alert for targets without an unlock restriction; always succeeds and makes no sound."""

    async def unlock(self) -> None:
        return None

    async def play(self) -> None:
        return None


class WebSocketAlert:
    """Asks a connected browser to play its notification sound.

    ``send`` is the socket's JSON sender. The unlock step is a muted trial playback
    the browser answers by preloading the clip.
    """

    def __init__(self, send: Callable[[dict], Awaitable[Any]], sound_url: str = "/notification.mp3"):
        self.send = send
        self.sound_url = sound_url

    async def unlock(self) -> None:
        await self._send({"type": "sound", "action": "unlock", "url": self.sound_url})

    async def play(self) -> None:
        await self._send({"type": "sound", "action": "play", "url": self.sound_url})

    async def _send(self, frame: dict) -> None:
        try:
            await self.send(frame)
        except Exception as e:
            raise AudioUnavailable(f"Could not reach client for playback: {e}") from e


class NotificationGate:
    def __init__(self, resource: AlertResource = None, state: NotificationState = None):
        self.resource = resource or SilentAlert()
        self.state = state or NotificationState()
        self.last_failure = None

    @staticmethod
    def should_notify(message: Message, self_author: str, state: NotificationState) -> bool:
        return message.author != self_author and state.enabled

    async def prime_audio(self) -> bool:
        """Unlock the alert resource. Must be driven by a direct user action."""
        if self.state.primed:
            self.state.enabled = True
            return True
        try:
            await self.resource.unlock()
        except Exception as e:
            self.state.enabled = False
            self.last_failure = str(e)
            logger.warning(f"Audio initialization failed: {e}")
            return False
        self.state.enabled = True
        self.state.primed = True
        self.last_failure = None
        logger.debug("Audio primed")
        return True

    async def notify(self) -> bool:
        """Replay the alert from the start. A failed playback disables alerts until re-enabled."""
        if not self.state.enabled:
            return False
        try:
            await self.resource.play()
        except Exception as e:
            self.state.enabled = False
            self.last_failure = str(e)
            logger.error(f"Error playing sound: {e}")
            return False
        return True

    def report_failure(self, reason: str, action: str = "play") -> None:
        """Record a failure the alert target reported after the fact.

        A failed unlock also clears ``primed`` so the next enable unlocks again.
        """
        self.state.enabled = False
        if action == "unlock":
            self.state.primed = False
        self.last_failure = reason or "Audio playback failed"
        logger.warning(f"Client reported audio {action} failure: {self.last_failure}")

    async def maybe_notify(self, message: Message, self_author: str) -> bool:
        if not self.should_notify(message, self_author, self.state):
            return False
        return await self.notify()
