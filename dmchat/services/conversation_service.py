import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from dmchat.core.errors import NotFoundError, SelfConversationError
from dmchat.models.message import STATUS_READ
from dmchat.repositories.user_repository import UserRepository
from dmchat.schemas.conversation import Conversation
from dmchat.schemas.events import SOURCE_MESSAGES, SOURCE_PRESENCE, ChangeEvent
from dmchat.schemas.message import Message
from dmchat.services.message_store import MessageStore
from dmchat.services.presence_service import PresenceTracker
from dmchat.utils.broker import Broker, Connection, IncomingFilter, OutgoingFilter, PresenceFilter, Subscription


logger = logging.getLogger(__name__)


def _display_name(profile: Optional[dict], fallback: str) -> str:
    if not profile:
        return fallback
    return profile.get("full_name") or profile.get("email") or fallback


class ConversationView:
    """
    One user's conversation list, patchable event by event.

    Unread state is kept as the set of unread incoming message ids per
    partner, so a redelivered INSERT or a repeated read UPDATE leaves the
    count unchanged.
    """

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self._entries: Dict[str, Conversation] = {}
        self._unread: Dict[str, Set[int]] = {}

    def __contains__(self, partner_id: str) -> bool:
        return partner_id in self._entries

    def get(self, partner_id: str) -> Optional[Conversation]:
        return self._entries.get(partner_id)

    def add_entry(self, conversation: Conversation) -> None:
        self._entries[conversation.partner_id] = conversation
        self._unread.setdefault(conversation.partner_id, set())

    def conversations(self) -> List[Conversation]:
        def key(c: Conversation):
            return (c.last_message_time is not None, c.last_message_time, c.last_message_id or 0)

        return sorted(self._entries.values(), key=key, reverse=True)

    def apply(self, event: ChangeEvent) -> Optional[Conversation]:
        """Patch the entry the event touches; returns it, or None if the event is not ours."""
        if event.source == SOURCE_MESSAGES:
            return self._apply_message(event)
        if event.source == SOURCE_PRESENCE:
            entry = self._entries.get(event.record["user_id"])
            if entry is not None:
                entry.is_online = bool(event.record["is_online"])
            return entry
        return None

    def apply_message(self, message: Message) -> Conversation:
        """Fold a stored message into the view (also used for the initial scan)."""
        partner_id = message.partner_of(self.user_id)
        entry = self._entries.get(partner_id)
        if entry is None:
            entry = Conversation(partner_id=partner_id, partner_display_name=partner_id)
            self.add_entry(entry)
        current = (entry.last_message_time, entry.last_message_id)
        if entry.last_message_id is None or message.sort_key > current:
            entry.last_message = message.content
            entry.last_message_time = message.created_at
            entry.last_message_id = message.id
        unread = self._unread[partner_id]
        if message.receiver_id == self.user_id and message.status != STATUS_READ:
            unread.add(message.id)
        else:
            unread.discard(message.id)
        entry.unread_count = len(unread)
        return entry

    def _apply_message(self, event: ChangeEvent) -> Optional[Conversation]:
        message = Message.model_validate(event.record)
        if not message.involves(self.user_id) or message.sender_id == message.receiver_id:
            return None
        return self.apply_message(message)


class LiveConversationView:
    """A ConversationView kept current by broker subscriptions until closed."""

    def __init__(
        self,
        view: ConversationView,
        broker: Broker,
        subscriptions: List[Subscription],
        users: UserRepository,
        on_change: Optional[Callable[[Conversation], Awaitable[None]]] = None,
    ) -> None:
        self.view = view
        self._broker = broker
        self._subscriptions = subscriptions
        self._users = users
        self._on_change = on_change
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        self._tasks = [asyncio.create_task(self._pump(sub)) for sub in self._subscriptions]

    def conversations(self) -> List[Conversation]:
        return self.view.conversations()

    async def drain(self) -> None:
        """Apply whatever is already queued without waiting for more."""
        for sub in self._subscriptions:
            while True:
                event = sub.get_nowait()
                if event is None:
                    break
                await self._handle(event)

    async def close(self) -> None:
        for sub in self._subscriptions:
            self._broker.unsubscribe(sub)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            try:
                await self._handle(event)
            except Exception:
                logger.exception("Conversation view for %s failed to apply %s event", self.view.user_id, event.source)

    async def _handle(self, event: ChangeEvent) -> None:
        is_new = event.source == SOURCE_MESSAGES and self._partner_of(event) not in self.view
        entry = self.view.apply(event)
        if entry is None:
            return
        if is_new:
            profile = await self._users.get_user_by_id(entry.partner_id)
            entry.partner_display_name = _display_name(profile, entry.partner_id)
            entry.partner_email = profile.get("email") if profile else None
        if self._on_change is not None:
            await self._on_change(entry)

    def _partner_of(self, event: ChangeEvent) -> str:
        record = event.record
        return record["receiver_id"] if record["sender_id"] == self.view.user_id else record["sender_id"]


class ConversationAggregator:

    def __init__(self, message_store: MessageStore, presence: PresenceTracker, users: UserRepository, broker: Broker) -> None:
        self._message_store = message_store
        self._presence = presence
        self._users = users
        self._broker = broker

    async def build_view(self, user_id: str) -> ConversationView:
        view = ConversationView(user_id)
        # newest first, so the first message seen per partner is its last message
        for message in await self._message_store.list_messages_for_user(user_id):
            if message.sender_id == message.receiver_id:
                continue
            view.apply_message(message)

        partner_ids = [c.partner_id for c in view.conversations()]
        profiles = {p["_id"]: p for p in await self._users.get_users(partner_ids)}
        presence = await self._presence.get_many(partner_ids)
        for partner_id in partner_ids:
            entry = view.get(partner_id)
            profile = profiles.get(partner_id)
            entry.partner_display_name = _display_name(profile, partner_id)
            entry.partner_email = profile.get("email") if profile else None
            entry.is_online = presence[partner_id].is_online if partner_id in presence else False
        return view

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        view = await self.build_view(user_id)
        return view.conversations()

    async def start_conversation(self, user_id: str, partner_identity: str) -> Conversation:
        profile = await self._users.get_user_by_email(partner_identity)
        if not profile:
            raise NotFoundError("User not found with that email address", error_code="USER_NOT_FOUND", details={"email": partner_identity})
        if profile["_id"] == user_id:
            raise SelfConversationError("You cannot message yourself")
        presence = await self._presence.get(profile["_id"])
        return Conversation(
            partner_id=profile["_id"],
            partner_display_name=_display_name(profile, profile["_id"]),
            partner_email=profile.get("email"),
            is_online=presence.is_online if presence else False,
        )

    async def open_view(
        self,
        connection: Connection,
        on_change: Optional[Callable[[Conversation], Awaitable[None]]] = None,
    ) -> LiveConversationView:
        # subscribe before scanning so nothing falls between the scan and the first event
        subscriptions = [
            self._broker.subscribe(connection, IncomingFilter(connection.user_id)),
            self._broker.subscribe(connection, OutgoingFilter(connection.user_id)),
            self._broker.subscribe(connection, PresenceFilter()),
        ]
        try:
            view = await self.build_view(connection.user_id)
        except Exception:
            for sub in subscriptions:
                self._broker.unsubscribe(sub)
            raise
        live = LiveConversationView(view, self._broker, subscriptions, self._users, on_change)
        live.start()
        return live
