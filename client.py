from typing import Any, Callable, List, Optional

from directory import RoomDirectory
from errors import SyncError
from logging_config import get_logger
from notifications import NotificationGate
from schemas.rooms import Message, Room
from session import SessionContext
from stream import MessageComposer, MessageStream

logger = get_logger(__name__)


class ChatClient:
    """Everything one connected user needs: session, room list, current room, alerts.

    Created per connection and closed when the connection goes away;
    ``close`` always releases every subscription it opened.
    """

    def __init__(
        self,
        store,
        channel,
        display_name: Optional[str] = None,
        gate: Optional[NotificationGate] = None,
        on_reset: Optional[Callable[[List[Message]], Any]] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
        on_scroll: Optional[Callable[[], Any]] = None,
        on_room_created: Optional[Callable[[Room], Any]] = None,
        on_room: Optional[Callable[[Room], Any]] = None,
        on_degraded: Optional[Callable[[Optional[str]], Any]] = None,
    ):
        self.session = SessionContext(display_name) if display_name else SessionContext()
        self.gate = gate or NotificationGate()
        self.directory = RoomDirectory(store, channel)
        self.stream = MessageStream(
            store,
            channel,
            gate=self.gate,
            self_author=self.session.identity.display_name if self.session.identity else None,
            on_reset=on_reset,
            on_message=on_message,
            on_scroll=on_scroll,
            on_room=on_room,
            on_degraded=on_degraded,
        )
        self.composer = MessageComposer(self.stream, self.session)
        if on_room_created is not None:
            self.directory.on_room_created(on_room_created)

    @property
    def notification_state(self):
        return self.gate.state

    async def open(self) -> List[Room]:
        """Load the room list and follow room creation."""
        return await self.directory.start()

    def close(self) -> None:
        self.stream.unbind()
        self.directory.close()
        self.session.leave_room()
        logger.debug("Chat client closed")

    def set_identity(self, display_name: str) -> None:
        identity = self.session.set_identity(display_name)
        self.stream.self_author = identity.display_name

    async def create_room(self, name: str) -> Room:
        """Create a room. The returned room is for navigation; the directory learns of it from its event."""
        self.session.require_identity()
        return await self.directory.create_room(name)

    async def join_room(self, room_id: str) -> Optional[Room]:
        """Enter a room. Returns None if a later join or leave superseded this one."""
        identity = self.session.enter_room(room_id)
        self.stream.self_author = identity.display_name
        try:
            room = await self.stream.bind(room_id)
        except SyncError as e:
            self.session.leave_room()
            logger.info(f"Could not enter room {room_id}: {e.code}")
            raise
        if room is None:
            logger.debug(f"Join of room {room_id} superseded")
            return None
        logger.info(f"{identity.display_name} joined room {room_id} ({room.name})")
        return room

    def leave_room(self) -> None:
        room_id = self.session.current_room_id
        self.stream.unbind()
        self.session.leave_room()
        if room_id is not None:
            logger.info(f"Left room {room_id}")

    async def send(self, body: str) -> Optional[Message]:
        self.composer.draft = body
        return await self.composer.submit()

    async def enable_sound(self) -> bool:
        return await self.gate.prime_audio()
