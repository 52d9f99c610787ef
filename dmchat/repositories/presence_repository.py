from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from dmchat.database.errors import driver_errors, upsert_with_retry
from dmchat.models.presence import PresenceDocument
from dmchat.utils.clock import as_utc, to_storage


def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[PresenceDocument]:
    if doc is None:
        return None
    doc.pop("_id", None)
    doc["last_seen"] = as_utc(doc["last_seen"])
    return doc  # type: ignore[return-value]


class PresenceRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["user_presence"]

    async def ensure_indexes(self) -> None:
        with driver_errors("user_presence.ensure_indexes"):
            await self.collection.create_index([("user_id", ASCENDING)], unique=True)
            await self.collection.create_index([("is_online", ASCENDING), ("last_seen", ASCENDING)])

    async def upsert(self, user_id: str, is_online: bool, last_seen: datetime) -> PresenceDocument:
        async def _call():
            return await self.collection.find_one_and_update(
                {"user_id": user_id},
                {"$set": {"is_online": is_online, "last_seen": to_storage(last_seen)}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )

        return _normalize(await upsert_with_retry("user_presence.upsert", _call))

    async def mark_offline_if_stale(self, user_id: str, cutoff: datetime) -> Optional[PresenceDocument]:
        """Flip to offline unless a heartbeat landed after ``cutoff``; last_seen keeps the last heartbeat."""
        with driver_errors("user_presence.mark_offline_if_stale"):
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id, "is_online": True, "last_seen": {"$lt": to_storage(cutoff)}},
                {"$set": {"is_online": False}},
                return_document=ReturnDocument.AFTER,
            )
        return _normalize(doc)

    async def get(self, user_id: str) -> Optional[PresenceDocument]:
        with driver_errors("user_presence.get"):
            doc = await self.collection.find_one({"user_id": user_id})
        return _normalize(doc)

    async def get_many(self, user_ids: Iterable[str]) -> List[PresenceDocument]:
        ids = list(user_ids)
        if not ids:
            return []
        with driver_errors("user_presence.get_many"):
            items = await self.collection.find({"user_id": {"$in": ids}}).to_list(length=None)
        return [_normalize(it) for it in items]

    async def list_stale(self, cutoff: datetime) -> List[str]:
        with driver_errors("user_presence.list_stale"):
            cur = self.collection.find({"is_online": True, "last_seen": {"$lt": to_storage(cutoff)}}, {"user_id": 1})
            items = await cur.to_list(length=None)
        return [it["user_id"] for it in items]
