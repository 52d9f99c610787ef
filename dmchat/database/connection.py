import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from dmchat import config


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_to_mongo(url: Optional[str] = None, db_name: Optional[str] = None) -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is not None:
        return _db
    _client = AsyncIOMotorClient(url or config.MONGO_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
    _db = _client[db_name or config.MONGO_DB_NAME]
    logger.info("Connected to MongoDB database %s", _db.name)
    return _db


async def close_mongo_connection() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None
