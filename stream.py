"""
Message stream sync: the ordered view of one room's messages.

The view is a projection of the store's change events. Writes go to the
store and come back through the subscription; nothing is inserted
optimistically, so the local order is always the commit order.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from channel import call_handler
from constants import CHANNEL_READY_TIMEOUT, MESSAGES_TABLE
from errors import StoreReadFailed, StoreWriteFailed, SyncError
from logging_config import get_logger
from schemas.rooms import Message, Room

logger = get_logger(__name__)


class StreamState(str, Enum):
    UNBOUND = "unbound"
    LOADING = "loading"
    LIVE = "live"


class MessageStream:
    """Keeps one room's messages in sync with the store.

    Each bind starts a new generation; any await that resumes under an
    older generation drops its result instead of applying it.

    Presentation hooks, all optional and may be coroutines:
      - ``on_room(room)``: the room was validated; sent before any messages
      - ``on_reset(messages)``: the whole view was replaced (initial load)
      - ``on_message(message)``: one message was appended
      - ``on_scroll()``: the view grew, scroll to the latest entry
      - ``on_degraded(reason)``: reconciliation after a reconnect failed (reason)
        or caught up again (None)
    """

    def __init__(
        self,
        store,
        channel,
        gate=None,
        self_author: Optional[str] = None,
        on_reset: Optional[Callable[[List[Message]], Any]] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
        on_scroll: Optional[Callable[[], Any]] = None,
        on_room: Optional[Callable[[Room], Any]] = None,
        on_degraded: Optional[Callable[[Optional[str]], Any]] = None,
        ready_timeout: float = CHANNEL_READY_TIMEOUT,
    ):
        self.store = store
        self.channel = channel
        self.gate = gate
        self.self_author = self_author
        self.on_reset = on_reset
        self.on_message = on_message
        self.on_scroll = on_scroll
        self.on_room = on_room
        self.on_degraded = on_degraded
        self.ready_timeout = ready_timeout

        self.state = StreamState.UNBOUND
        self.room_id: Optional[str] = None
        self.room_name: Optional[str] = None
        # Set while a reconciliation fetch is owed after a reconnect
        self.degraded: Optional[str] = None
        self._messages: List[Message] = []
        self._ids: set = set()
        self._pending: List[Message] = []
        self._generation = 0
        self._subscription = None

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self):
        return len(self._messages)

    async def bind(self, room_id: str) -> Optional[Room]:
        """Switch to ``room_id``: validate it, subscribe, load history, go live.

        Raises RoomNotFound or StoreReadFailed; the stream is left unbound.
        Returns None if another bind or unbind superseded this one.
        """
        self.unbind()
        self._generation += 1
        generation = self._generation
        self.room_id = room_id
        self.state = StreamState.LOADING
        logger.info(f"Binding message stream to room {room_id} (generation {generation})")

        try:
            room = await self.store.get_room(room_id)
        except SyncError:
            if generation == self._generation:
                self.unbind()
            raise
        if self._is_stale(generation, "room lookup"):
            return None
        self.room_name = room.name
        await self._emit(self.on_room, room)
        if self._is_stale(generation, "room announcement"):
            return None

        self._subscription = self.channel.subscribe(
            MESSAGES_TABLE,
            {"room_id": room_id},
            lambda record: self._on_insert(generation, record),
            on_reconnect=lambda: self._on_reconnect(generation),
        )
        if not await self._subscription.wait_ready(self.ready_timeout):
            logger.warning(f"Subscription for room {room_id} not confirmed in time; loading anyway")
        if self._is_stale(generation, "subscription open"):
            return None

        try:
            history = await self.store.list_messages(room_id)
        except SyncError:
            if generation == self._generation:
                self.unbind()
            raise
        if self._is_stale(generation, "history fetch"):
            return None
        await self._apply_history(history)
        return room

    def unbind(self) -> None:
        """Release the subscription and discard the view. Synchronous so no stale work can interleave."""
        if self.state is StreamState.UNBOUND and self._subscription is None:
            return
        logger.info(f"Unbinding message stream from room {self.room_id}")
        self._generation += 1
        self.channel.unsubscribe(self._subscription)
        self._subscription = None
        self.state = StreamState.UNBOUND
        self.room_id = None
        self.room_name = None
        self.degraded = None
        self._messages = []
        self._ids = set()
        self._pending = []

    async def send_message(self, room_id: str, author: str, body: str) -> Optional[Message]:
        """Write a message. Returns None without touching the store when ``body`` is blank.

        The view is not updated here; the message shows up when its insert
        event arrives.
        """
        if not body or not body.strip():
            logger.debug("Ignoring blank message")
            return None
        try:
            return await self.store.append_message(room_id, author, body)
        except StoreWriteFailed as e:
            logger.error(f"Error sending message to room {room_id}: {e}")
            raise

    def _is_stale(self, generation: int, step: str) -> bool:
        if generation != self._generation:
            logger.debug(f"Discarding stale {step} result (generation {generation}, current {self._generation})")
            return True
        return False

    async def _on_insert(self, generation: int, record: dict) -> None:
        if generation != self._generation:
            return
        message = Message.model_validate(record)
        if message.room_id != self.room_id:
            logger.warning(f"Ignoring message {message.id} for room {message.room_id} on room {self.room_id} stream")
            return
        if self.state is StreamState.LOADING:
            self._pending.append(message)
            logger.debug(f"Queued message {message.id} until history is applied")
            return
        if await self._append(message):
            await self._emit(self.on_scroll)

    async def _on_reconnect(self, generation: int) -> None:
        """Re-fetch after a channel interruption and append whatever was missed.

        If the fetch fails the stream stays LOADING (live events keep queueing)
        and the error propagates so the channel reconnects and calls again.
        """
        if generation != self._generation:
            return
        logger.info(f"Reconciling room {self.room_id} after reconnect")
        self.state = StreamState.LOADING
        try:
            history = await self.store.list_messages(self.room_id)
        except StoreReadFailed as e:
            if self._is_stale(generation, "reconciliation failure"):
                return
            logger.warning(f"Reconciliation fetch failed for room {self.room_id}: {e}")
            self.degraded = e.message
            await self._emit(self.on_degraded, self.degraded)
            raise
        if self._is_stale(generation, "reconciliation fetch"):
            return
        if self.degraded is not None:
            logger.info(f"Room {self.room_id} caught up after failed reconciliation")
            self.degraded = None
            await self._emit(self.on_degraded, None)

        grew = False
        for message in sorted(history, key=lambda m: m.sort_key):
            if message.id not in self._ids:
                self._remember(message)
                await self._emit(self.on_message, message)
                grew = True
        if grew:
            logger.info(f"Recovered missed messages for room {self.room_id}")
        grew = await self._go_live() or grew
        if grew:
            await self._emit(self.on_scroll)

    async def _apply_history(self, history: List[Message]) -> None:
        merged: Dict[str, Message] = {}
        for message in history:
            merged.setdefault(message.id, message)
        fresh = []
        for message in self._pending:
            if message.id not in merged:
                merged[message.id] = message
                fresh.append(message)
        self._pending = []

        for message in sorted(merged.values(), key=lambda m: m.sort_key):
            self._remember(message)
        self.state = StreamState.LIVE
        logger.info(f"Room {self.room_id} live with {len(self._messages)} messages")

        await self._emit(self.on_reset, self.messages)
        for message in fresh:
            await self._notify(message)
        await self._emit(self.on_scroll)

    async def _go_live(self) -> bool:
        pending, self._pending = self._pending, []
        self.state = StreamState.LIVE
        grew = False
        for message in pending:
            grew = await self._append(message) or grew
        return grew

    async def _append(self, message: Message) -> bool:
        if message.id in self._ids:
            logger.debug(f"Duplicate delivery of message {message.id} ignored")
            return False
        self._remember(message)
        logger.debug(f"Appended message {message.id} to room {self.room_id}")
        await self._emit(self.on_message, message)
        await self._notify(message)
        return True

    def _remember(self, message: Message) -> None:
        self._messages.append(message)
        self._ids.add(message.id)

    async def _notify(self, message: Message) -> None:
        if self.gate is not None:
            await self.gate.maybe_notify(message, self.self_author)

    async def _emit(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            await call_handler(hook, *args)
        except Exception as e:
            logger.error(f"Presentation hook failed for room {self.room_id}: {e}", exc_info=True)


class MessageComposer:
    """Draft input for the current room. The draft is cleared only once a write is confirmed."""

    def __init__(self, stream: MessageStream, session):
        self.stream = stream
        self.session = session
        self.draft = ""

    async def submit(self) -> Optional[Message]:
        identity = self.session.require_identity()
        room_id = self.stream.room_id
        if room_id is None:
            raise StoreWriteFailed("Not in a room", code="NotBound")
        message = await self.stream.send_message(room_id, identity.display_name, self.draft)
        if message is not None:
            self.draft = ""
        return message
