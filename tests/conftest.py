import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from errors import RoomNotFound, StoreReadFailed, StoreWriteFailed
from schemas.rooms import Message, Room

_BROKEN = object()

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_message(msg_id: str, room_id: str = "1", author: str = "alice", body: str = "hello",
                 offset: int = 0) -> Message:
    return Message(id=msg_id, room_id=room_id, author=author, body=body,
                   created_at=BASE_TIME + timedelta(seconds=offset))


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# Redis doubles


class FakePubSub:
    def __init__(self, backend: "FakeRedis") -> None:
        self.backend = backend
        self.channels: List[str] = []
        self.queue: asyncio.Queue = asyncio.Queue()
        self.broken = False
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        if self.backend.offline:
            raise RedisConnectionError("connection refused")
        if self.backend.subscribe_errors:
            raise self.backend.subscribe_errors.pop(0)
        for channel in channels:
            self.channels.append(channel)
            self.backend.subscribers[channel].append(self)

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or list(self.channels):
            if self in self.backend.subscribers.get(channel, []):
                self.backend.subscribers[channel].remove(self)
        self.channels = []

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0) -> Optional[dict]:
        if self.broken:
            raise RedisConnectionError("connection lost")
        try:
            item = await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _BROKEN:
            raise RedisConnectionError("connection lost")
        return item

    async def aclose(self) -> None:
        self.closed = True

    def break_connection(self) -> None:
        self.broken = True
        self.queue.put_nowait(_BROKEN)


class FakePipeline:
    def __init__(self, backend: "FakeRedis") -> None:
        self.backend = backend
        self.ops: List[Any] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self.ops = []

    def hset(self, key: str, mapping: Dict[str, Any]) -> "FakePipeline":
        self.ops.append(lambda: self.backend._hset(key, mapping))
        return self

    def hgetall(self, key: str) -> "FakePipeline":
        self.ops.append(lambda: dict(self.backend.hashes.get(key, {})))
        return self

    def zadd(self, key: str, mapping: Dict[str, float]) -> "FakePipeline":
        self.ops.append(lambda: self.backend._zadd(key, mapping))
        return self

    def publish(self, channel: str, message: str) -> "FakePipeline":
        self.ops.append(lambda: self.backend._publish(channel, message))
        return self

    async def execute(self) -> List[Any]:
        if self.backend.fail_writes:
            raise RedisConnectionError("write failed")
        results = [op() for op in self.ops]
        self.ops = []
        return results


class FakeRedis:
    def __init__(self) -> None:
        self.counters: Dict[str, int] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.subscribers: Dict[str, List[FakePubSub]] = defaultdict(list)
        self.published: List[tuple] = []
        self.fail_writes = False
        self.fail_reads = False
        self.offline = False
        # Raised one at a time by the next SUBSCRIBE calls
        self.subscribe_errors: List[Exception] = []

    def _check_read(self) -> None:
        if self.fail_reads:
            raise RedisConnectionError("read failed")

    async def ping(self) -> bool:
        return not self.offline

    async def incr(self, key: str) -> int:
        if self.fail_writes:
            raise RedisConnectionError("write failed")
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def hgetall(self, key: str) -> Dict[str, str]:
        self._check_read()
        return dict(self.hashes.get(key, {}))

    async def exists(self, key: str) -> int:
        self._check_read()
        return int(key in self.hashes or key in self.zsets)

    async def zrange(self, key: str, start: int, end: int) -> List[str]:
        self._check_read()
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))
        members = [member for member, _ in members]
        return members[start:] if end == -1 else members[start:end + 1]

    async def zcard(self, key: str) -> int:
        self._check_read()
        return len(self.zsets.get(key, {}))

    async def publish(self, channel: str, message: str) -> int:
        return self._publish(channel, message)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def aclose(self) -> None:
        return None

    def _hset(self, key: str, mapping: Dict[str, Any]) -> int:
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    def _zadd(self, key: str, mapping: Dict[str, float]) -> int:
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def _publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        receivers = list(self.subscribers.get(channel, []))
        for pubsub in receivers:
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def drop_connections(self) -> None:
        """Simulate a transport drop: every live subscriber errors out and stops receiving."""
        for channel, receivers in self.subscribers.items():
            for pubsub in receivers:
                pubsub.break_connection()
            receivers.clear()


class MiniRedisServer:
    """Just enough of the Redis wire protocol for a real pub/sub client.

    Speaks RESP2 or RESP3 (after HELLO 3). Answers SUBSCRIBE, UNSUBSCRIBE and
    PING, and +OK to every other command so the client handshake succeeds.
    """

    def __init__(self) -> None:
        self.port: Optional[int] = None
        self.writers: Set[asyncio.StreamWriter] = set()
        self.channels: Dict[str, Set[asyncio.StreamWriter]] = defaultdict(set)
        self.subscribe_commands = 0
        self._resp3: Set[asyncio.StreamWriter] = set()
        self._server: Optional[asyncio.Server] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self.drop_all()
        self._server.close()
        await self._server.wait_closed()

    @property
    def connection_count(self) -> int:
        return len(self.writers)

    def subscribers(self, channel: str) -> int:
        return len(self.channels.get(channel, ()))

    def publish(self, channel: str, data: str) -> int:
        receivers = list(self.channels.get(channel, ()))
        for writer in receivers:
            self._push(writer, "message", channel, data)
        return len(receivers)

    def drop_all(self) -> None:
        """Abort every client socket, the way a Redis restart or network cut does."""
        for writer in list(self.writers):
            self._forget(writer)
            writer.transport.abort()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writers.add(writer)
        try:
            while True:
                command = await self._read_command(reader)
                if command is None:
                    break
                self._handle(writer, command)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._forget(writer)
            writer.close()

    @staticmethod
    async def _read_command(reader: asyncio.StreamReader) -> Optional[List[str]]:
        line = await reader.readline()
        if not line:
            return None
        if not line.startswith(b"*"):
            return line.decode().split()
        args = []
        for _ in range(int(line[1:])):
            header = await reader.readline()
            data = await reader.readexactly(int(header[1:]) + 2)
            args.append(data[:-2].decode())
        return args

    def _handle(self, writer: asyncio.StreamWriter, command: List[str]) -> None:
        name = command[0].upper()
        if name == "HELLO":
            if len(command) > 1 and command[1] == "3":
                self._resp3.add(writer)
                writer.write(b"%1\r\n+proto\r\n:3\r\n")
            else:
                writer.write(b"*2\r\n+proto\r\n:2\r\n")
        elif name == "SUBSCRIBE":
            for channel in command[1:]:
                self.subscribe_commands += 1
                self.channels[channel].add(writer)
                self._push(writer, "subscribe", channel, self._subscription_count(writer))
        elif name == "UNSUBSCRIBE":
            names = command[1:] or [channel for channel, members in self.channels.items() if writer in members]
            if not names:
                self._push(writer, "unsubscribe", None, 0)
            for channel in names:
                self.channels[channel].discard(writer)
                self._push(writer, "unsubscribe", channel, self._subscription_count(writer))
        elif name == "PING":
            if self._subscription_count(writer):
                self._push(writer, "pong", "")
            else:
                writer.write(b"+PONG\r\n")
        else:
            writer.write(b"+OK\r\n")

    def _subscription_count(self, writer: asyncio.StreamWriter) -> int:
        return sum(1 for members in self.channels.values() if writer in members)

    def _forget(self, writer: asyncio.StreamWriter) -> None:
        self.writers.discard(writer)
        self._resp3.discard(writer)
        for members in self.channels.values():
            members.discard(writer)

    def _push(self, writer: asyncio.StreamWriter, *items) -> None:
        resp3 = writer in self._resp3
        out = [(b">" if resp3 else b"*") + str(len(items)).encode() + b"\r\n"]
        for item in items:
            if item is None:
                out.append(b"_\r\n" if resp3 else b"$-1\r\n")
            elif isinstance(item, int):
                out.append(b":%d\r\n" % item)
            else:
                data = item.encode()
                out.append(b"$%d\r\n%s\r\n" % (len(data), data))
        writer.write(b"".join(out))


# Engine-level doubles


class FakeSubscription:
    def __init__(self, topic: str, filters: Optional[dict], on_event, on_reconnect) -> None:
        self.topic = topic
        self.filters = dict(filters or {})
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.active = True

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return True


class FakeChannel:
    """In-memory channel; tests push events explicitly with ``deliver``."""

    def __init__(self) -> None:
        self.subscriptions: List[FakeSubscription] = []
        self.unsubscribe_calls = 0

    def subscribe(self, topic, filters, on_event, on_reconnect=None) -> FakeSubscription:
        subscription = FakeSubscription(topic, filters, on_event, on_reconnect)
        self.subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription) -> None:
        self.unsubscribe_calls += 1
        if subscription is not None:
            subscription.active = False

    @property
    def active(self) -> List[FakeSubscription]:
        return [s for s in self.subscriptions if s.active]

    async def deliver(self, topic: str, record: dict) -> None:
        for subscription in list(self.active):
            if subscription.topic != topic:
                continue
            if any(record.get(k) != v for k, v in subscription.filters.items()):
                continue
            result = subscription.on_event(record)
            if asyncio.iscoroutine(result):
                await result

    async def reconnect(self) -> None:
        for subscription in list(self.active):
            if subscription.on_reconnect is not None:
                await subscription.on_reconnect()


class FakeStore:
    """Room and message store with controllable fetch timing and read/write failures."""

    def __init__(self) -> None:
        self.rooms: Dict[str, Room] = {}
        self.messages: Dict[str, List[Message]] = defaultdict(list)
        self.writes: List[tuple] = []
        self.fail_writes = False
        self.fail_reads = False
        self.holds: Dict[str, asyncio.Event] = {}

    def add_room(self, room_id: str, name: str) -> Room:
        room = Room(id=room_id, name=name, created_at=BASE_TIME)
        self.rooms[room_id] = room
        return room

    def hold_messages(self, room_id: str) -> asyncio.Event:
        self.holds[room_id] = asyncio.Event()
        return self.holds[room_id]

    async def list_rooms(self) -> List[Room]:
        if self.fail_reads:
            raise StoreReadFailed("Could not list rooms")
        return list(self.rooms.values())

    async def get_room(self, room_id: str) -> Room:
        if room_id not in self.rooms:
            raise RoomNotFound(f"Room {room_id} not found")
        return self.rooms[room_id]

    async def create_room(self, name: str) -> Room:
        if self.fail_writes:
            raise StoreWriteFailed("Failed to create room")
        room = self.add_room(str(len(self.rooms) + 1), name)
        self.writes.append(("room", room))
        return room

    async def list_messages(self, room_id: str) -> List[Message]:
        if self.fail_reads:
            raise StoreReadFailed(f"Could not list messages for room {room_id}")
        snapshot = sorted(self.messages[room_id], key=lambda m: m.sort_key)
        hold = self.holds.get(room_id)
        if hold is not None:
            await hold.wait()
        return snapshot

    async def append_message(self, room_id: str, author: str, body: str) -> Message:
        if self.fail_writes:
            raise StoreWriteFailed("Failed to send message")
        offset = sum(len(v) for v in self.messages.values())
        message = make_message(f"w{offset}", room_id=room_id, author=author, body=body, offset=1000 + offset)
        self.messages[room_id].append(message)
        self.writes.append(("message", message))
        return message


class RecordingAlert:
    def __init__(self, fail_unlock: bool = False, fail_play: bool = False) -> None:
        self.fail_unlock = fail_unlock
        self.fail_play = fail_play
        self.unlocks = 0
        self.plays = 0

    async def unlock(self) -> None:
        self.unlocks += 1
        if self.fail_unlock:
            raise RuntimeError("play() failed because the user didn't interact with the document first")

    async def play(self) -> None:
        if self.fail_play:
            raise RuntimeError("playback interrupted")
        self.plays += 1


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def redis_server():
    server = MiniRedisServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()
