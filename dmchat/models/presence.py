from datetime import datetime
from typing import TypedDict


class PresenceDocument(TypedDict, total=False):
    user_id: str
    is_online: bool
    last_seen: datetime
