import asyncio
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from dmchat import config


logger = logging.getLogger(__name__)


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        # Same shape as the Redis subscription: run() blocks until cancel()
        class _Sub:
            def __init__(self_inner) -> None:
                self_inner._stopped = asyncio.Event()

            async def run(self_inner):
                await self_inner._stopped.wait()

            async def cancel(self_inner):
                self_inner._stopped.set()

        return _Sub()

    async def close(self) -> None:
        return


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)
        self.enabled = True

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except redis.RedisError:
                        logger.warning("Redis subscription on %s failed; retrying", channel, exc_info=True)
                        await asyncio.sleep(0.5)
                        continue
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except redis.RedisError:
                    logger.debug("Ignoring error while closing subscription on %s", channel, exc_info=True)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus(url: Optional[str] = None):
    global _bus
    if _bus is not None:
        return _bus
    url = url if url is not None else config.REDIS_URL
    if not url:
        _bus = NoopBus()
        return _bus
    _bus = RedisBus(url)
    logger.info("Using Redis realtime bus")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
