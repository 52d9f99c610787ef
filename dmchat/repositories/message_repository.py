from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from dmchat.database.errors import driver_errors
from dmchat.models.message import STATUS_READ, MessageDocument, MessageStatus
from dmchat.utils.clock import as_utc, from_ms, to_ms, to_storage


def _normalize(doc: Optional[Dict[str, Any]]) -> Optional[MessageDocument]:
    if doc is None:
        return None
    doc["created_at"] = as_utc(doc["created_at"])
    doc["read_at"] = as_utc(doc.get("read_at"))
    return doc  # type: ignore[return-value]


def _pair_query(user_a: str, user_b: str) -> Dict[str, Any]:
    return {
        "$or": [
            {"user_id": user_a, "receiver_id": user_b},
            {"user_id": user_b, "receiver_id": user_a},
        ]
    }


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    @property
    def counters(self):
        return self._db["counters"]

    async def ensure_indexes(self) -> None:
        with driver_errors("messages.ensure_indexes"):
            await self.collection.create_index([("user_id", ASCENDING), ("receiver_id", ASCENDING), ("created_at", ASCENDING)])
            await self.collection.create_index([("receiver_id", ASCENDING), ("status", ASCENDING)])
            # one row per (sender, client_message_id); rows without a client id are not indexed
            await self.collection.create_index(
                [("user_id", ASCENDING), ("client_message_id", ASCENDING)],
                name="user_client_message_id_unique",
                unique=True,
                partialFilterExpression={"client_message_id": {"$type": "string"}},
            )

    async def next_id(self) -> int:
        with driver_errors("messages.next_id"):
            counter = await self.counters.find_one_and_update(
                {"_id": "messages"},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return int(counter["seq"])

    async def latest_created_at(self) -> Optional[datetime]:
        with driver_errors("messages.latest_created_at"):
            doc = await self.collection.find_one({}, sort=[("created_at", DESCENDING), ("_id", DESCENDING)])
        return as_utc(doc["created_at"]) if doc else None

    async def save_message(
        self,
        message_id: int,
        sender_id: str,
        receiver_id: str,
        content: str,
        created_at: datetime,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "_id": message_id,
            "user_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "status": "sent",
            "created_at": created_at,
            "read_at": None,
        }
        if client_message_id:
            doc["client_message_id"] = client_message_id
        with driver_errors("messages.save"):
            await self.collection.insert_one({**doc, "created_at": to_storage(created_at)})
        return doc  # type: ignore[return-value]

    async def get(self, message_id: int) -> Optional[MessageDocument]:
        with driver_errors("messages.get"):
            doc = await self.collection.find_one({"_id": message_id})
        return _normalize(doc)

    async def get_by_client_id(self, sender_id: str, client_message_id: str) -> Optional[MessageDocument]:
        with driver_errors("messages.get_by_client_id"):
            doc = await self.collection.find_one({"user_id": sender_id, "client_message_id": client_message_id})
        return _normalize(doc)

    async def list_between(self, user_a: str, user_b: str) -> List[MessageDocument]:
        with driver_errors("messages.list_between"):
            cur = self.collection.find(_pair_query(user_a, user_b)).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            items = await cur.to_list(length=None)
        return [_normalize(it) for it in items]

    async def page_between(
        self,
        user_a: str,
        user_b: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[MessageDocument], Optional[str]]:
        query: Dict[str, Any] = _pair_query(user_a, user_b)
        if cursor:
            # cursor format: ts_ms:id, pointing at the oldest item already returned
            ts_str, id_str = cursor.split(":", 1)
            ts = to_storage(from_ms(int(ts_str)))
            query = {
                "$and": [
                    query,
                    {"$or": [
                        {"created_at": {"$lt": ts}},
                        {"created_at": ts, "_id": {"$lt": int(id_str)}},
                    ]},
                ]
            }
        with driver_errors("messages.page_between"):
            cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(limit)
            items = [_normalize(it) for it in await cur.to_list(length=limit)]
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_ms(last['created_at'])}:{last['_id']}"
        # ascending chronological order for the caller
        return list(reversed(items)), next_cursor

    async def list_for_user(self, user_id: str) -> List[MessageDocument]:
        query = {"$or": [{"user_id": user_id}, {"receiver_id": user_id}]}
        with driver_errors("messages.list_for_user"):
            cur = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            items = await cur.to_list(length=None)
        return [_normalize(it) for it in items]

    async def list_incoming_since(self, user_id: str, since: datetime) -> List[MessageDocument]:
        with driver_errors("messages.list_incoming_since"):
            cur = self.collection.find({"receiver_id": user_id, "created_at": {"$gt": to_storage(since)}}).sort(
                [("created_at", ASCENDING), ("_id", ASCENDING)]
            )
            items = await cur.to_list(length=None)
        return [_normalize(it) for it in items]

    async def list_unread_ids(self, receiver_id: str, sender_id: str) -> List[int]:
        query = {"receiver_id": receiver_id, "user_id": sender_id, "status": {"$ne": STATUS_READ}}
        with driver_errors("messages.list_unread_ids"):
            cur = self.collection.find(query, {"_id": 1}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            items = await cur.to_list(length=None)
        return [it["_id"] for it in items]

    async def transition_status(
        self,
        message_id: int,
        from_statuses: Iterable[MessageStatus],
        status: MessageStatus,
        read_at: Optional[datetime] = None,
    ) -> Optional[MessageDocument]:
        """Set ``status`` only if the row is currently in one of ``from_statuses``; None if it was not."""
        update: Dict[str, Any] = {"status": status}
        if read_at is not None:
            update["read_at"] = to_storage(read_at)
        with driver_errors("messages.transition_status"):
            doc = await self.collection.find_one_and_update(
                {"_id": message_id, "status": {"$in": list(from_statuses)}},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        return _normalize(doc)
