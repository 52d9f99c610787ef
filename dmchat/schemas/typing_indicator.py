from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from dmchat.models.typing_indicator import TypingIndicatorDocument


class TypingIndicator(BaseModel):

    user_id: str
    conversation_partner_id: str
    is_typing: bool
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: TypingIndicatorDocument) -> "TypingIndicator":
        return cls(
            user_id=doc["user_id"],
            conversation_partner_id=doc["conversation_partner_id"],
            is_typing=doc["is_typing"],
            updated_at=doc.get("updated_at"),
        )


class TypingUpdate(BaseModel):

    is_typing: bool
