from datetime import datetime

from pydantic import BaseModel

from dmchat.models.presence import PresenceDocument


class Presence(BaseModel):

    user_id: str
    is_online: bool
    last_seen: datetime

    @classmethod
    def from_document(cls, doc: PresenceDocument) -> "Presence":
        return cls(user_id=doc["user_id"], is_online=doc["is_online"], last_seen=doc["last_seen"])
