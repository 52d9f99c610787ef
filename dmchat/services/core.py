import asyncio
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from dmchat.repositories.message_repository import MessageRepository
from dmchat.repositories.presence_repository import PresenceRepository
from dmchat.repositories.typing_repository import TypingRepository
from dmchat.repositories.user_repository import UserRepository
from dmchat.services.conversation_service import ConversationAggregator
from dmchat.services.message_store import MessageStore
from dmchat.services.presence_service import PresenceTracker
from dmchat.services.typing_service import TypingTracker
from dmchat.utils.broker import Broker
from dmchat.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)


class ChatCore:
    """The process-wide set of stores sharing one broker."""

    def __init__(self, db: AsyncIOMotorDatabase, broker: Optional[Broker] = None) -> None:
        self.db = db
        self.broker = broker or Broker()
        self._message_repo = MessageRepository(db)
        self._presence_repo = PresenceRepository(db)
        self._typing_repo = TypingRepository(db)
        self.users = UserRepository(db)
        self.messages = MessageStore(self._message_repo, self.broker)
        self.presence = PresenceTracker(self._presence_repo, self.broker)
        self.typing = TypingTracker(self._typing_repo, self.broker)
        self.conversations = ConversationAggregator(self.messages, self.presence, self.users, self.broker)
        self.connections = ConnectionManager()
        self._sweeper: Optional[asyncio.Task] = None

    async def start(self, sweep: bool = True) -> None:
        await self._message_repo.ensure_indexes()
        await self._presence_repo.ensure_indexes()
        await self._typing_repo.ensure_indexes()
        await self.messages.prime_clock()
        await self.broker.start_relay()
        if sweep:
            self._sweeper = asyncio.create_task(self.presence.run_sweeper())
        logger.info("Chat core started")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.broker.stop_relay()
        logger.info("Chat core stopped")
