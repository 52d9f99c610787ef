from datetime import datetime
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument

from dmchat.database.errors import driver_errors, upsert_with_retry
from dmchat.models.typing_indicator import TypingIndicatorDocument
from dmchat.utils.clock import as_utc, to_storage


def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[TypingIndicatorDocument]:
    if doc is None:
        return None
    doc.pop("_id", None)
    doc["updated_at"] = as_utc(doc.get("updated_at"))
    return doc  # type: ignore[return-value]


class TypingRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["typing_indicators"]

    async def ensure_indexes(self) -> None:
        with driver_errors("typing_indicators.ensure_indexes"):
            await self.collection.create_index(
                [("user_id", ASCENDING), ("conversation_partner_id", ASCENDING)],
                unique=True,
            )

    async def upsert(self, user_id: str, partner_id: str, is_typing: bool, updated_at: datetime) -> TypingIndicatorDocument:
        async def _call():
            return await self.collection.find_one_and_update(
                {"user_id": user_id, "conversation_partner_id": partner_id},
                {"$set": {"is_typing": is_typing, "updated_at": to_storage(updated_at)}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )

        return _normalize(await upsert_with_retry("typing_indicators.upsert", _call))

    async def get(self, user_id: str, partner_id: str) -> Optional[TypingIndicatorDocument]:
        with driver_errors("typing_indicators.get"):
            doc = await self.collection.find_one({"user_id": user_id, "conversation_partner_id": partner_id})
        return _normalize(doc)
