from datetime import datetime
from typing import TypedDict


class TypingIndicatorDocument(TypedDict, total=False):
    user_id: str
    conversation_partner_id: str
    is_typing: bool
    updated_at: datetime
