import json
import uuid
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from constants import (
    FILTER_COLUMNS,
    MESSAGES_TABLE,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    ROOMS_TABLE,
)
from errors import ChannelDisconnected, RoomNotFound, StoreReadFailed, StoreWriteFailed
from logging_config import get_logger
from redis_keys import (
    REDIS_MESSAGES_KEY,
    REDIS_META_KEY,
    REDIS_ROOM_INDEX_KEY,
    REDIS_ROOM_SEQ_KEY,
    change_channel,
)
from schemas.rooms import ChangeEvent, Message, Room, utc_now

logger = get_logger(__name__)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def build_client(host: str = REDIS_HOST, port: int = REDIS_PORT, password: Optional[str] = REDIS_PASSWORD,
                 db: int = REDIS_DB, retries: Optional[int] = None):
    """Create an asyncio Redis client; ``retries=0`` makes connection drops surface to the caller."""
    kwargs = {"host": host, "port": port, "password": password, "db": db, "decode_responses": True}
    if retries is not None:
        kwargs["retry"] = Retry(NoBackoff(), retries)
    return redis.Redis(**kwargs)


class RedisBackend:
    """Authoritative room/message store plus the publishing half of the change feed.

    Every insert is written and announced inside one MULTI/EXEC block, so
    subscribers see inserts in the order Redis committed them.
    """

    def __init__(self, redis_client=None, pubsub_client=None):
        if redis_client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            redis_client = build_client()
            if pubsub_client is None:
                # Separate connection for pub/sub (required by Redis). It must not
                # reconnect silently: the event channel has to see every drop so the
                # owner can re-fetch what was published meanwhile.
                pubsub_client = build_client(retries=0)
        self.redis_client = redis_client
        if pubsub_client is None:
            pubsub_client = redis_client
        self.pubsub_client = pubsub_client

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    # Rooms

    async def list_rooms(self) -> list[Room]:
        logger.debug("Listing rooms")
        try:
            room_ids = await self.redis_client.zrange(REDIS_ROOM_INDEX_KEY, 0, -1)
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for room_id in room_ids:
                    pipe.hgetall(REDIS_META_KEY.format(slug=room_id))
                rows = await pipe.execute() if room_ids else []
        except RedisError as e:
            logger.error(f"Failed to list rooms: {e}", exc_info=True)
            raise StoreReadFailed("Could not list rooms") from e
        rooms = [Room.model_validate(row) for row in rows if row]
        logger.debug(f"Listed {len(rooms)} rooms")
        return rooms

    async def get_room(self, room_id: str) -> Room:
        logger.debug(f"Fetching room {room_id}")
        try:
            row = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        except RedisError as e:
            logger.error(f"Failed to fetch room {room_id}: {e}", exc_info=True)
            raise StoreReadFailed(f"Could not fetch room {room_id}", details={"room_id": room_id}) from e
        if not row:
            logger.debug(f"Room {room_id} not found in Redis")
            raise RoomNotFound(f"Room {room_id} not found", details={"room_id": room_id})
        return Room.model_validate(row)

    async def create_room(self, name: str) -> Room:
        logger.info(f"Creating room {name!r}")
        try:
            room_id = str(await self.redis_client.incr(REDIS_ROOM_SEQ_KEY))
            room = Room(id=room_id, name=name, created_at=utc_now())
            row = room.model_dump(mode="json")
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(REDIS_META_KEY.format(slug=room_id), mapping=row)
                pipe.zadd(REDIS_ROOM_INDEX_KEY, {room_id: int(room_id)})
                self._queue_change(pipe, ROOMS_TABLE, row)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Error creating room {name!r}: {e}", exc_info=True)
            raise StoreWriteFailed("Failed to create room", details={"name": name}) from e
        logger.info(f"Room {room_id} created successfully: name={name}")
        return room

    # Messages

    async def list_messages(self, room_id: str) -> list[Message]:
        logger.debug(f"Listing messages for room {room_id}")
        try:
            members = await self.redis_client.zrange(REDIS_MESSAGES_KEY.format(slug=room_id), 0, -1)
        except RedisError as e:
            logger.error(f"Failed to list messages for room {room_id}: {e}", exc_info=True)
            raise StoreReadFailed(f"Could not list messages for room {room_id}", details={"room_id": room_id}) from e
        messages = [Message.model_validate_json(member) for member in members]
        # Scores are millisecond precision; settle ties deterministically
        messages.sort(key=lambda m: m.sort_key)
        logger.debug(f"Room {room_id} has {len(messages)} messages")
        return messages

    async def append_message(self, room_id: str, author: str, body: str) -> Message:
        logger.debug(f"Appending message to room {room_id} from {author}")
        try:
            if not await self.redis_client.exists(REDIS_META_KEY.format(slug=room_id)):
                logger.warning(f"Rejected message for unknown room {room_id}")
                raise StoreWriteFailed(
                    f"Room {room_id} does not exist", code="WriteRejected", details={"room_id": room_id}
                )
            message = Message(id=uuid.uuid4().hex, room_id=room_id, author=author, body=body, created_at=utc_now())
            row = message.model_dump(mode="json")
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.zadd(REDIS_MESSAGES_KEY.format(slug=room_id), {json.dumps(row): _epoch_ms(message.created_at)})
                self._queue_change(pipe, MESSAGES_TABLE, row)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Error appending message to room {room_id}: {e}", exc_info=True)
            raise StoreWriteFailed("Failed to send message", details={"room_id": room_id}) from e
        logger.debug(f"Message {message.id} committed to room {room_id}")
        return message

    async def count_messages(self, room_id: str) -> int:
        try:
            return int(await self.redis_client.zcard(REDIS_MESSAGES_KEY.format(slug=room_id)))
        except RedisError as e:
            logger.error(f"Failed to count messages for room {room_id}: {e}", exc_info=True)
            raise StoreReadFailed(f"Could not count messages for room {room_id}") from e

    # Change notifications

    def _queue_change(self, pipe, table: str, row: dict):
        """Queue publication of an insert on the table channel and each filterable column channel."""
        payload = ChangeEvent(table=table, record=row).model_dump_json()
        pipe.publish(change_channel(table), payload)
        for column in FILTER_COLUMNS.get(table, ()):
            pipe.publish(change_channel(table, {column: row[column]}), payload)

    async def open_subscription(self, channel: str):
        """Create a pubsub subscriber for one change channel."""
        logger.debug(f"Subscribing to Redis channel {channel}")
        pubsub = self.pubsub_client.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as e:
            await self.close_subscription(pubsub)
            raise ChannelDisconnected(f"Could not subscribe to {channel}", details={"channel": channel}) from e
        logger.debug(f"Successfully subscribed to channel {channel}")
        return pubsub

    async def next_change(self, pubsub, timeout: float) -> Optional[ChangeEvent]:
        """Wait up to ``timeout`` seconds for the next insert event; None on timeout or unparseable payload."""
        try:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except (RedisError, OSError) as e:
            # LOADING, auth and protocol errors included: the channel retries them all
            raise ChannelDisconnected(f"Lost connection to change feed: {e}") from e
        if message is None or message.get("type") != "message":
            return None
        try:
            return ChangeEvent.model_validate_json(message["data"])
        except ValueError as e:
            logger.error(f"Dropping malformed change event on {message.get('channel')}: {e}")
            return None

    async def close_subscription(self, pubsub):
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            logger.debug("Closed pub/sub connection")
        except Exception as e:
            logger.debug(f"Error closing pub/sub: {e}")

    async def aclose(self):
        await self.redis_client.aclose()
        if self.pubsub_client is not self.redis_client:
            await self.pubsub_client.aclose()


redis_backend: Optional[RedisBackend] = None


def get_backend() -> RedisBackend:
    global redis_backend
    if redis_backend is None:
        redis_backend = RedisBackend()
    return redis_backend
