from typing import Any, Callable, Dict, List, Optional

from channel import call_handler
from constants import CHANNEL_READY_TIMEOUT, ROOMS_TABLE
from errors import InvalidInput, StoreReadFailed
from logging_config import get_logger
from schemas.rooms import Room

logger = get_logger(__name__)

RoomHandler = Callable[[Room], Any]


class RoomDirectory:
    """Local mapping of known rooms, kept current by room creation events.

    The directory never inserts a room it created itself; its own rooms
    arrive over the subscription like everyone else's.
    """

    def __init__(self, store, channel):
        self.store = store
        self.channel = channel
        self._rooms: Dict[str, Room] = {}
        self._handlers: List[RoomHandler] = []
        self._subscription = None

    @property
    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    async def start(self, ready_timeout: float = CHANNEL_READY_TIMEOUT) -> List[Room]:
        self._ensure_subscribed()
        if not await self._subscription.wait_ready(ready_timeout):
            logger.warning("Room subscription not confirmed in time; loading anyway")
        return await self.load_rooms()

    def close(self) -> None:
        self.channel.unsubscribe(self._subscription)
        self._subscription = None

    async def load_rooms(self) -> List[Room]:
        rooms = await self.store.list_rooms()
        for room in rooms:
            await self._apply(room, announce=False)
        logger.debug(f"Directory loaded {len(rooms)} rooms")
        return rooms

    def on_room_created(self, handler: RoomHandler) -> None:
        self._handlers.append(handler)
        self._ensure_subscribed()

    async def create_room(self, name: str) -> Room:
        """Write a new room. The directory picks it up from the creation event."""
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Please enter a room name")
        return await self.store.create_room(name)

    def _ensure_subscribed(self) -> None:
        if self._subscription is None:
            self._subscription = self.channel.subscribe(
                ROOMS_TABLE, None, self._on_insert, on_reconnect=self._on_reconnect
            )

    async def _on_insert(self, record: dict) -> None:
        room = Room.model_validate(record)
        await self._apply(room, announce=True)

    async def _on_reconnect(self) -> None:
        try:
            rooms = await self.store.list_rooms()
        except StoreReadFailed as e:
            # The channel retries the reconnect cycle until the reload succeeds
            logger.warning(f"Room directory reconciliation failed: {e}")
            raise
        for room in rooms:
            await self._apply(room, announce=True)

    async def _apply(self, room: Room, announce: bool) -> None:
        if room.id in self._rooms:
            logger.debug(f"Room {room.id} already known, ignoring replay")
            return
        self._rooms[room.id] = room
        logger.debug(f"Room {room.id} ({room.name}) added to directory")
        if not announce:
            return
        for handler in list(self._handlers):
            try:
                await call_handler(handler, room)
            except Exception as e:
                logger.error(f"Room created handler failed for room {room.id}: {e}", exc_info=True)
