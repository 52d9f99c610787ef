from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr


class Conversation(BaseModel):

    partner_id: str
    partner_display_name: str
    partner_email: Optional[str] = None
    last_message: Optional[str] = None
    last_message_time: Optional[datetime] = None
    last_message_id: Optional[int] = None
    unread_count: int = 0
    is_online: bool = False


class StartConversation(BaseModel):

    email: EmailStr
