import asyncio
import inspect
from typing import Any, Callable, Dict, Optional

from constants import CHANNEL_POLL_TIMEOUT, CHANNEL_RECONNECT_DELAY
from errors import ChannelDisconnected
from logging_config import get_logger
from redis_keys import change_channel
from schemas.rooms import ChangeEvent

logger = get_logger(__name__)

EventHandler = Callable[[dict], Any]
ReconnectHandler = Callable[[], Any]


async def call_handler(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """Handle for one topic+filter subscription. Owned by exactly one caller."""

    def __init__(self, topic: str, filters: Optional[dict], on_event: EventHandler,
                 on_reconnect: Optional[ReconnectHandler] = None):
        self.topic = topic
        self.filters = dict(filters or {})
        self.channel_name = change_channel(topic, self.filters)
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.active = True
        self.task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the channel is open. Returns False if ``timeout`` elapsed first."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self):
        return f"Subscription({self.channel_name!r}, active={self.active})"


class EventChannel:
    """Delivers committed insert events per topic+filter, in commit order.

    One listener task per subscription. Transport drops are retried here;
    the owner is told through ``on_reconnect`` so it can re-fetch whatever
    was published while the channel was down.
    """

    def __init__(self, backend, poll_timeout: float = CHANNEL_POLL_TIMEOUT,
                 reconnect_delay: float = CHANNEL_RECONNECT_DELAY):
        self.backend = backend
        self.poll_timeout = poll_timeout
        self.reconnect_delay = reconnect_delay
        self._subscriptions: Dict[int, Subscription] = {}

    def subscribe(self, topic: str, filters: Optional[dict], on_event: EventHandler,
                  on_reconnect: Optional[ReconnectHandler] = None) -> Subscription:
        subscription = Subscription(topic, filters, on_event, on_reconnect)
        subscription.task = asyncio.create_task(self._listen(subscription))
        self._subscriptions[id(subscription)] = subscription
        logger.info(f"Opened subscription on {subscription.channel_name}")
        return subscription

    def unsubscribe(self, subscription: Optional[Subscription]) -> None:
        """Release a subscription. Safe to call more than once, or before any event arrived."""
        if subscription is None or not subscription.active:
            return
        subscription.active = False
        self._subscriptions.pop(id(subscription), None)
        if subscription.task is not None and not subscription.task.done():
            subscription.task.cancel()
        logger.info(f"Released subscription on {subscription.channel_name}")

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def aclose(self) -> None:
        """Cancel every listener and wait for them to finish closing their pub/sub connections."""
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            self.unsubscribe(subscription)
        tasks = [s.task for s in subscriptions if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug(f"Event channel closed ({len(tasks)} listeners stopped)")

    async def _listen(self, subscription: Subscription) -> None:
        channel = subscription.channel_name
        logger.info(f"Starting listener for channel: {channel}")
        pubsub = None
        connected_before = False
        try:
            while subscription.active:
                try:
                    if pubsub is None:
                        pubsub = await self.backend.open_subscription(channel)
                        subscription._ready.set()
                        if connected_before:
                            logger.info(f"Reconnected to channel {channel}")
                            if not await self._dispatch_reconnect(subscription):
                                # Reconciliation is still owed; cycle the connection and ask again
                                raise ChannelDisconnected(f"Reconciliation failed on {channel}")
                        connected_before = True
                    event = await self.backend.next_change(pubsub, self.poll_timeout)
                except ChannelDisconnected as e:
                    logger.warning(f"Channel {channel} disconnected: {e}; retrying in {self.reconnect_delay}s")
                    pubsub = await self._reset(pubsub)
                    continue
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Unexpected error on channel {channel}: {e}; retrying in {self.reconnect_delay}s",
                                 exc_info=True)
                    pubsub = await self._reset(pubsub)
                    continue

                if event is None or not subscription.active:
                    continue
                await self._dispatch(subscription, event)
        except asyncio.CancelledError:
            logger.info(f"Listener task cancelled for channel: {channel}")
        finally:
            if pubsub is not None:
                await self.backend.close_subscription(pubsub)

    async def _reset(self, pubsub) -> None:
        if pubsub is not None:
            await self.backend.close_subscription(pubsub)
        await asyncio.sleep(self.reconnect_delay)
        return None

    async def _dispatch(self, subscription: Subscription, event: ChangeEvent) -> None:
        if event.type != "INSERT":
            return
        logger.debug(f"Delivering {event.table} insert on {subscription.channel_name}")
        try:
            await call_handler(subscription.on_event, event.record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A failing handler must not take the subscription down with it
            logger.error(f"Event handler failed on {subscription.channel_name}: {e}", exc_info=True)

    async def _dispatch_reconnect(self, subscription: Subscription) -> bool:
        """Run the owner's reconciliation. False means it failed and must be retried."""
        if subscription.on_reconnect is None:
            return True
        try:
            await call_handler(subscription.on_reconnect)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Reconnect handler failed on {subscription.channel_name}: {e}", exc_info=True)
            return False
        return True
