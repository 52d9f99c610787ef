import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from dmchat import config


logger = logging.getLogger(__name__)


class TypingTimer:
    """
    Client-side auto-clear for typing indicators.

    ``user_pressed(partner)`` reports typing once per burst and (re)starts a
    single-shot timer for that partner; if nothing else arrives within the
    idle window the timer reports ``False``. ``stop(partner)`` cancels the
    timer and clears immediately. One timer per partner.
    """

    def __init__(self, callback: Callable[[str, bool], Awaitable[None]], idle_seconds: Optional[float] = None) -> None:
        self.callback = callback
        self.idle_seconds = idle_seconds if idle_seconds is not None else config.TYPING_IDLE_SECONDS
        self._timers: Dict[str, asyncio.Task] = {}
        self._typing: Dict[str, bool] = {}

    def is_typing(self, partner_id: str) -> bool:
        return self._typing.get(partner_id, False)

    async def user_pressed(self, partner_id: str) -> None:
        self._cancel(partner_id)
        if not self._typing.get(partner_id):
            self._typing[partner_id] = True
            await self.callback(partner_id, True)
        self._timers[partner_id] = asyncio.create_task(self._expire(partner_id))

    async def stop(self, partner_id: str) -> None:
        self._cancel(partner_id)
        if self._typing.pop(partner_id, False):
            await self.callback(partner_id, False)

    async def stop_all(self) -> None:
        for partner_id in list(self._typing):
            await self.stop(partner_id)
        for partner_id in list(self._timers):
            self._cancel(partner_id)

    def _cancel(self, partner_id: str) -> None:
        task = self._timers.pop(partner_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire(self, partner_id: str) -> None:
        await asyncio.sleep(self.idle_seconds)
        self._timers.pop(partner_id, None)
        if self._typing.pop(partner_id, False):
            try:
                await self.callback(partner_id, False)
            except Exception:
                logger.warning("Auto-clear of typing state for %s failed", partner_id, exc_info=True)
