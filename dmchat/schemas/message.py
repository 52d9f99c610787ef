from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dmchat.models.message import MessageDocument, MessageStatus


class Message(BaseModel):

    id: int
    sender_id: str
    receiver_id: str
    content: str
    status: MessageStatus
    created_at: datetime
    read_at: Optional[datetime] = None
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: MessageDocument) -> "Message":
        return cls(
            id=doc["_id"],
            sender_id=doc["user_id"],
            receiver_id=doc["receiver_id"],
            content=doc["content"],
            status=doc["status"],
            created_at=doc["created_at"],
            read_at=doc.get("read_at"),
            client_message_id=doc.get("client_message_id"),
        )

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def partner_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    @property
    def sort_key(self):
        return (self.created_at, self.id)


class MessageCreate(BaseModel):

    to: str
    content: str
    client_message_id: Optional[str] = None


class MarkConversationRead(BaseModel):

    from_user_id: str


class MessagePage(BaseModel):

    items: List[Message]
    next_cursor: Optional[str] = None


class SendFailure(BaseModel):
    """Error frame for a failed send; hands the draft back to the client."""

    type: str = "error"
    command: str = "message"
    error: Dict[str, Any]
    retryable: bool = False
    draft: Dict[str, Any] = Field(default_factory=dict)
