from datetime import datetime
from typing import Literal, Optional, TypedDict


MessageStatus = Literal["sent", "delivered", "read"]

STATUS_SENT: MessageStatus = "sent"
STATUS_DELIVERED: MessageStatus = "delivered"
STATUS_READ: MessageStatus = "read"


class MessageDocument(TypedDict, total=False):
    # integer drawn from the "messages" counter
    _id: int
    # sender; column name kept from the persisted layout
    user_id: str
    receiver_id: str
    content: str
    status: MessageStatus
    created_at: datetime
    read_at: Optional[datetime]
    # sender-scoped retry key
    client_message_id: Optional[str]
