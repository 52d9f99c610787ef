import logging
from datetime import datetime
from typing import List, Optional, Tuple

from dmchat import config
from dmchat.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dmchat.models.message import STATUS_DELIVERED, STATUS_READ, STATUS_SENT, MessageDocument
from dmchat.repositories.message_repository import MessageRepository
from dmchat.schemas.events import SOURCE_MESSAGES, ChangeEvent
from dmchat.schemas.message import Message
from dmchat.utils.broker import Broker
from dmchat.utils.clock import MonotonicClock


logger = logging.getLogger(__name__)


class MessageStore:
    """
    Append-only log of direct messages.

    ``send`` and the status transitions are the only writes; each one emits
    a change event to the broker after the row is stored. Ids come from a
    server-side counter and ``created_at`` from a monotonic clock, so
    ``(created_at, id)`` is a total order that client clocks cannot skew.
    """

    def __init__(self, message_repo: MessageRepository, broker: Broker, clock: Optional[MonotonicClock] = None) -> None:
        self._message_repo = message_repo
        self._broker = broker
        self._clock = clock or MonotonicClock()

    async def prime_clock(self) -> None:
        latest = await self._message_repo.latest_created_at()
        if latest is not None:
            self._clock.advance_past(latest)

    async def send(self, sender_id: str, receiver_id: str, content: str, client_message_id: Optional[str] = None) -> Message:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty", error_code="EMPTY_CONTENT")
        if len(text) > config.MAX_CONTENT_LENGTH:
            raise ValidationError(
                "Message content is too long",
                error_code="CONTENT_TOO_LONG",
                details={"max_length": config.MAX_CONTENT_LENGTH},
            )
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself", error_code="SELF_MESSAGE")

        if client_message_id:
            existing = await self._message_repo.get_by_client_id(sender_id, client_message_id)
            if existing is not None:
                logger.info("Duplicate send %s from %s; returning message %s", client_message_id, sender_id, existing["_id"])
                return Message.from_document(existing)

        message_id = await self._message_repo.next_id()
        try:
            saved = await self._message_repo.save_message(
                message_id=message_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=text,
                created_at=self._clock.now(),
                client_message_id=client_message_id,
            )
        except ConflictError:
            # a concurrent send with the same client id won the insert
            existing = await self._message_repo.get_by_client_id(sender_id, client_message_id) if client_message_id else None
            if existing is None:
                raise
            logger.info("Concurrent duplicate send %s from %s; returning message %s", client_message_id, sender_id, existing["_id"])
            return Message.from_document(existing)

        message = Message.from_document(saved)
        logger.debug("Message %s stored: %s -> %s", message.id, sender_id, receiver_id)
        await self._emit("INSERT", message)
        return message

    async def get(self, message_id: int) -> Message:
        doc = await self._message_repo.get(message_id)
        if doc is None:
            raise NotFoundError(f"Message {message_id} not found", details={"message_id": message_id})
        return Message.from_document(doc)

    async def list_conversation(self, user_a: str, user_b: str) -> List[Message]:
        docs = await self._message_repo.list_between(user_a, user_b)
        return [Message.from_document(d) for d in docs]

    async def page_conversation(
        self,
        user_a: str,
        user_b: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Message], Optional[str]]:
        try:
            docs, next_cursor = await self._message_repo.page_between(user_a, user_b, limit=limit, cursor=cursor)
        except ValueError as exc:
            raise ValidationError("Malformed cursor", error_code="BAD_CURSOR", details={"cursor": cursor}) from exc
        return [Message.from_document(d) for d in docs], next_cursor

    async def list_messages_for_user(self, user_id: str) -> List[Message]:
        """Every message the user sent or received, newest first."""
        return [Message.from_document(d) for d in await self._message_repo.list_for_user(user_id)]

    async def list_incoming_since(self, user_id: str, since: datetime) -> List[Message]:
        docs = await self._message_repo.list_incoming_since(user_id, since)
        return [Message.from_document(d) for d in docs]

    async def mark_read(self, message_id: int, reader_id: str) -> Message:
        current = await self._load_for_receiver(message_id, reader_id)
        if current["status"] == STATUS_READ:
            return Message.from_document(current)
        updated = await self._message_repo.transition_status(
            message_id,
            (STATUS_SENT, STATUS_DELIVERED),
            STATUS_READ,
            read_at=self._clock.now(),
        )
        if updated is None:
            # lost a race with another mark_read; the row is read already
            return await self.get(message_id)
        message = Message.from_document(updated)
        await self._emit("UPDATE", message, old=current)
        return message

    async def mark_delivered(self, message_id: int, receiver_id: str) -> Message:
        current = await self._load_for_receiver(message_id, receiver_id)
        if current["status"] != STATUS_SENT:
            return Message.from_document(current)
        updated = await self._message_repo.transition_status(message_id, (STATUS_SENT,), STATUS_DELIVERED)
        if updated is None:
            return await self.get(message_id)
        message = Message.from_document(updated)
        await self._emit("UPDATE", message, old=current)
        return message

    async def mark_conversation_read(self, reader_id: str, partner_id: str) -> int:
        count = 0
        for message_id in await self._message_repo.list_unread_ids(reader_id, partner_id):
            await self.mark_read(message_id, reader_id)
            count += 1
        return count

    async def _load_for_receiver(self, message_id: int, user_id: str) -> MessageDocument:
        doc = await self._message_repo.get(message_id)
        if doc is None:
            raise NotFoundError(f"Message {message_id} not found", details={"message_id": message_id})
        if doc["receiver_id"] != user_id:
            raise ForbiddenError(
                "Only the receiver can update a message's status",
                details={"message_id": message_id},
            )
        return doc

    async def _emit(self, kind: str, message: Message, old: Optional[MessageDocument] = None) -> None:
        event = ChangeEvent(
            source=SOURCE_MESSAGES,
            type=kind,
            record=message.model_dump(),
            old=Message.from_document(old).model_dump() if old is not None else None,
        )
        await self._broker.publish(event)
