from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel


EventSource = Literal["messages", "typing_indicators", "user_presence"]
EventType = Literal["INSERT", "UPDATE"]

SOURCE_MESSAGES: EventSource = "messages"
SOURCE_TYPING: EventSource = "typing_indicators"
SOURCE_PRESENCE: EventSource = "user_presence"


class ChangeEvent(BaseModel):
    """
    One row change emitted by a store.

    ``record`` is the public shape of the row after the change (``Message``,
    ``TypingIndicator`` or ``Presence`` dumped to a dict); ``old`` is the
    previous shape for UPDATEs when the store knows it. ``origin`` names the
    process that produced the event so the Redis relay can skip its own.
    """

    source: EventSource
    type: EventType
    record: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None
    origin: Optional[str] = None
