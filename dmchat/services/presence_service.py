import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from dmchat import config
from dmchat.models.presence import PresenceDocument
from dmchat.repositories.presence_repository import PresenceRepository
from dmchat.schemas.events import SOURCE_PRESENCE, ChangeEvent
from dmchat.schemas.presence import Presence
from dmchat.utils.broker import Broker
from dmchat.utils.clock import seconds_ago, truncate_ms, utcnow


logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    One online/offline row per user.

    Sessions call ``set_online(True)`` on connect and heartbeat while the
    socket lives; ``sweep`` flips anyone whose last heartbeat is older than
    the timeout, which is how a dropped connection without a close frame
    ends up offline.
    """

    def __init__(self, presence_repo: PresenceRepository, broker: Broker, timeout_seconds: Optional[float] = None) -> None:
        self._presence_repo = presence_repo
        self._broker = broker
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.PRESENCE_TIMEOUT_SECONDS

    async def set_online(self, user_id: str, online: bool) -> Presence:
        doc = await self._presence_repo.upsert(user_id, online, truncate_ms(utcnow()))
        presence = Presence.from_document(doc)
        await self._emit(presence)
        return presence

    async def heartbeat(self, user_id: str) -> Presence:
        return await self.set_online(user_id, True)

    async def get(self, user_id: str) -> Optional[Presence]:
        doc = await self._presence_repo.get(user_id)
        return Presence.from_document(doc) if doc else None

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, Presence]:
        docs: List[PresenceDocument] = await self._presence_repo.get_many(user_ids)
        return {d["user_id"]: Presence.from_document(d) for d in docs}

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        cutoff = seconds_ago(self.timeout_seconds, now)
        expired: List[str] = []
        for user_id in await self._presence_repo.list_stale(cutoff):
            doc = await self._presence_repo.mark_offline_if_stale(user_id, cutoff)
            if doc is None:
                continue  # heartbeat arrived in between
            expired.append(user_id)
            await self._emit(Presence.from_document(doc))
        if expired:
            logger.info("Presence timeout: %d user(s) marked offline", len(expired))
        return expired

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        interval = interval if interval is not None else config.PRESENCE_SWEEP_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Presence sweep failed")

    async def _emit(self, presence: Presence) -> None:
        await self._broker.publish(ChangeEvent(source=SOURCE_PRESENCE, type="UPDATE", record=presence.model_dump()))
