import re
from typing import Any, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from dmchat.database.errors import driver_errors
from dmchat.models.user import UserDocument


def _id_forms(user_id: str) -> List[Any]:
    """Profiles may be keyed by ObjectId or by a plain string id."""
    forms: List[Any] = [user_id]
    if ObjectId.is_valid(user_id):
        forms.append(ObjectId(user_id))
    return forms


class UserRepository:
    """Read-only view of the profile store; accounts are created elsewhere."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_email(self, email: str) -> Optional[UserDocument]:
        # emails are stored as registered; match them case-insensitively
        pattern = f"^{re.escape(email.strip())}$"
        with driver_errors("users.get_by_email"):
            user = await self._collection.find_one({"email": {"$regex": pattern, "$options": "i"}})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        with driver_errors("users.get_by_id"):
            user = await self._collection.find_one({"_id": {"$in": _id_forms(user_id)}})
        if user:
            user["_id"] = str(user["_id"])
        return user

    async def get_users(self, user_ids: Iterable[str]) -> List[UserDocument]:
        ids = [form for user_id in user_ids for form in _id_forms(user_id)]
        if not ids:
            return []
        with driver_errors("users.get_many"):
            users = await self._collection.find({"_id": {"$in": ids}}).to_list(length=None)
        for user in users:
            user["_id"] = str(user["_id"])
        return users
