import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from pairchat.config import get_settings


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


class _LocalSub:

    def __init__(self, bus: "LocalBus", channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self._channel = channel
        self.on_message = on_message
        self._closed = asyncio.Event()

    async def run(self):
        await self._closed.wait()

    async def cancel(self):
        self._bus._unregister(self._channel, self)
        self._closed.set()


class LocalBus:
    """In-process fan-out. Enough for a single worker and for tests."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[_LocalSub]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscribers.get(channel, [])):
            await sub.on_message(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _LocalSub:
        # registered before returning so nothing published afterwards is missed
        sub = _LocalSub(self, channel, on_message)
        self._subscribers.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    def _unregister(self, channel: str, sub: _LocalSub) -> None:
        subs = self._subscribers.get(channel)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscribers[channel]

    async def close(self) -> None:
        self._subscribers.clear()


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if msg and msg.get("type") == "message":
                            data = msg.get("data")
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            await on_message(data)
                    except RedisError as exc:
                        logger.warning("Redis subscription on %s failed, retrying: %s", channel, exc)
                        await asyncio.sleep(0.5)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisError as exc:
                    logger.warning("Could not unsubscribe from %s: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url: Optional[str] = get_settings().redis_url
    if not url:
        _bus = LocalBus()
    else:
        logger.info("Using Redis realtime bus")
        _bus = RedisBus(url)
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
