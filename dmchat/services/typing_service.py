import logging
from typing import Optional

from dmchat.core.errors import ValidationError
from dmchat.repositories.typing_repository import TypingRepository
from dmchat.schemas.events import SOURCE_TYPING, ChangeEvent
from dmchat.schemas.typing_indicator import TypingIndicator
from dmchat.utils.broker import Broker
from dmchat.utils.clock import truncate_ms, utcnow


logger = logging.getLogger(__name__)


class TypingTracker:
    """
    Last-write-wins typing state per (user, partner) pair.

    No expiry happens here: whoever sets ``is_typing=True`` must clear it,
    normally through ``dmchat.utils.typing_timer.TypingTimer``.
    """

    def __init__(self, typing_repo: TypingRepository, broker: Broker) -> None:
        self._typing_repo = typing_repo
        self._broker = broker

    async def set_typing(self, user_id: str, partner_id: str, is_typing: bool) -> TypingIndicator:
        if user_id == partner_id:
            raise ValidationError("Cannot type to yourself", error_code="SELF_TYPING")
        doc = await self._typing_repo.upsert(user_id, partner_id, is_typing, truncate_ms(utcnow()))
        indicator = TypingIndicator.from_document(doc)
        await self._broker.publish(
            ChangeEvent(source=SOURCE_TYPING, type="UPDATE", record=indicator.model_dump())
        )
        return indicator

    async def get(self, user_id: str, partner_id: str) -> Optional[TypingIndicator]:
        doc = await self._typing_repo.get(user_id, partner_id)
        return TypingIndicator.from_document(doc) if doc else None
