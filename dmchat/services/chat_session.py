"""
Per-WebSocket session: turns client commands into store calls and
subscription events into outgoing frames.

Commands (client -> server)::

    {"type": "subscribe", "filter": {"kind": "conversation", "partner_id": "..."}, "ref": "1"}
    {"type": "subscribe", "filter": {"kind": "conversations"}}
    {"type": "unsubscribe", "handle": "..."}
    {"type": "message", "to": "...", "content": "hi", "client_message_id": "c-1"}
    {"type": "typing_start", "to": "..."} / {"type": "typing_stop", "to": "..."}
    {"type": "seen", "message_id": 42} / {"type": "delivered", "message_id": 42}
    {"type": "heartbeat"}

Frames (server -> client): ``subscribed``, ``unsubscribed``, ``ack``,
``event``, ``conversation``, ``replay``, ``pong`` and ``error``.

The ``conversations`` subscription answers with the current conversation
list in its ``subscribed`` frame, then pushes one ``conversation`` frame
per changed entry until unsubscribed.
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from dmchat.core.errors import DmChatError, ValidationError
from dmchat.models.message import STATUS_SENT
from dmchat.schemas.conversation import Conversation
from dmchat.schemas.events import SOURCE_MESSAGES, ChangeEvent
from dmchat.schemas.message import SendFailure
from dmchat.services.conversation_service import LiveConversationView
from dmchat.services.core import ChatCore
from dmchat.utils.broker import Connection, Subscription, SubscriptionClosed, filter_from_dict
from dmchat.utils.clock import from_ms
from dmchat.utils.typing_timer import TypingTimer


logger = logging.getLogger(__name__)

SendJson = Callable[[Dict[str, Any]], Awaitable[None]]


class ChatSession:

    def __init__(self, core: ChatCore, connection: Connection, send_json: SendJson, typing_idle_seconds: Optional[float] = None) -> None:
        self.core = core
        self.connection = connection
        self._send_json = send_json
        self._forwarders: Dict[str, asyncio.Task] = {}
        self._views: Dict[str, LiveConversationView] = {}
        self.typing_timer = TypingTimer(self._push_typing, idle_seconds=typing_idle_seconds)
        self._handlers = {
            "subscribe": self._on_subscribe,
            "unsubscribe": self._on_unsubscribe,
            "message": self._on_message,
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "seen": self._on_seen,
            "delivered": self._on_delivered,
            "heartbeat": self._on_heartbeat,
        }

    @property
    def user_id(self) -> str:
        return self.connection.user_id

    # -- lifecycle -----------------------------------------------------------------

    async def open(self, resume_since: Optional[int] = None) -> None:
        if self.core.connections.connection_count(self.user_id) == 1:
            await self._best_effort("presence online", self.core.presence.set_online(self.user_id, True))
        if resume_since is not None:
            await self._replay(resume_since)

    async def close(self) -> None:
        await self.typing_timer.stop_all()
        for live in list(self._views.values()):
            await live.close()
        self._views.clear()
        self.core.broker.close_connection(self.connection)
        tasks = list(self._forwarders.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._forwarders.clear()
        remaining = self.core.connections.disconnect(self.connection)
        if remaining == 0:
            await self._best_effort("presence offline", self.core.presence.set_online(self.user_id, False))

    async def handle(self, command: Dict[str, Any]) -> None:
        kind = command.get("type")
        handler = self._handlers.get(kind)
        if handler is None:
            await self._send_error(command, ValidationError(f"Unknown message type: {kind}", error_code="UNKNOWN_COMMAND"))
            return
        try:
            await handler(command)
        except DmChatError as exc:
            await self._send_error(command, exc)

    # -- commands ------------------------------------------------------------------

    async def _on_subscribe(self, command: Dict[str, Any]) -> None:
        raw_filter = command.get("filter") or {}
        if isinstance(raw_filter, dict) and raw_filter.get("kind") == "conversations":
            await self._subscribe_conversations(command)
            return
        interest = filter_from_dict(self.user_id, raw_filter)
        subscription = self.core.broker.subscribe(self.connection, interest)
        self._forwarders[subscription.handle] = asyncio.create_task(self._forward(subscription))
        await self._send({
            "type": "subscribed",
            "handle": subscription.handle,
            "filter": interest.to_dict(),
            "ref": command.get("ref"),
        })

    async def _on_unsubscribe(self, command: Dict[str, Any]) -> None:
        handle = command.get("handle")
        subscription = self.core.broker.get_subscription(handle) if handle else None
        # handles owned by other connections are left alone
        if subscription is not None and subscription.connection is self.connection:
            self.core.broker.unsubscribe(subscription)
        task = self._forwarders.pop(handle, None)
        if task is not None:
            task.cancel()
        live = self._views.pop(handle, None)
        if live is not None:
            await live.close()
        await self._send({"type": "unsubscribed", "handle": handle, "ref": command.get("ref")})

    async def _subscribe_conversations(self, command: Dict[str, Any]) -> None:
        handle = uuid.uuid4().hex

        async def push(entry: Conversation) -> None:
            await self._send({"type": "conversation", "handle": handle, "conversation": entry.model_dump(mode="json")})

        live = await self.core.conversations.open_view(self.connection, on_change=push)
        self._views[handle] = live
        await self._send({
            "type": "subscribed",
            "handle": handle,
            "filter": {"kind": "conversations", "user_id": self.user_id},
            "conversations": [c.model_dump(mode="json") for c in live.conversations()],
            "ref": command.get("ref"),
        })

    async def _on_message(self, command: Dict[str, Any]) -> None:
        to = command.get("to")
        content = command.get("content")
        client_message_id = command.get("client_message_id")
        try:
            if not isinstance(to, str) or not to or not isinstance(content, str):
                raise ValidationError("Invalid message payload", details={"required": ["to", "content"]})
            if client_message_id is not None and not isinstance(client_message_id, str):
                raise ValidationError("client_message_id must be a string", details={"client_message_id": client_message_id})
            message = await self.core.messages.send(self.user_id, to, content, client_message_id)
        except DmChatError as exc:
            logger.info("Send from %s failed: %s", self.user_id, exc)
            failure = SendFailure(
                error=exc.to_dict(),
                retryable=exc.retryable,
                draft={"to": to, "content": content, "client_message_id": client_message_id},
            )
            await self._send({**failure.model_dump(), "ref": command.get("ref")})
            return
        await self._send({
            "type": "ack",
            "command": "message",
            "ref": command.get("ref"),
            "message": message.model_dump(mode="json"),
        })
        await self.typing_timer.stop(to)

    async def _on_typing_start(self, command: Dict[str, Any]) -> None:
        await self.typing_timer.user_pressed(self._partner_id(command))

    async def _on_typing_stop(self, command: Dict[str, Any]) -> None:
        await self.typing_timer.stop(self._partner_id(command))

    async def _on_seen(self, command: Dict[str, Any]) -> None:
        message = await self.core.messages.mark_read(self._message_id(command), self.user_id)
        await self._send({"type": "ack", "command": "seen", "ref": command.get("ref"), "message": message.model_dump(mode="json")})

    async def _on_delivered(self, command: Dict[str, Any]) -> None:
        message = await self.core.messages.mark_delivered(self._message_id(command), self.user_id)
        await self._send({"type": "ack", "command": "delivered", "ref": command.get("ref"), "message": message.model_dump(mode="json")})

    async def _on_heartbeat(self, command: Dict[str, Any]) -> None:
        await self._best_effort("presence heartbeat", self.core.presence.heartbeat(self.user_id))
        await self._send({"type": "pong", "ref": command.get("ref")})

    # -- helpers -------------------------------------------------------------------

    def _partner_id(self, command: Dict[str, Any]) -> str:
        to = command.get("to")
        if not isinstance(to, str) or not to:
            raise ValidationError("to must be a user id", details={"to": to})
        return to

    def _message_id(self, command: Dict[str, Any]) -> int:
        try:
            return int(command["message_id"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("message_id is required", details={"message_id": command.get("message_id")})

    async def _push_typing(self, partner_id: str, is_typing: bool) -> None:
        await self._best_effort("typing", self.core.typing.set_typing(self.user_id, partner_id, is_typing))

    async def _best_effort(self, what: str, call: Awaitable[Any]) -> None:
        # presence and typing are indicators; failures degrade silently
        try:
            await call
        except DmChatError as exc:
            logger.warning("%s for %s failed: %s", what, self.user_id, exc)

    async def _forward(self, subscription: Subscription) -> None:
        while True:
            try:
                event = await subscription.get()
            except SubscriptionClosed as exc:
                if exc.overflowed:
                    await self._send({"type": "unsubscribed", "handle": subscription.handle, "reason": "overflow"})
                return
            await self._acknowledge_delivery(event)
            try:
                await self._send({"type": "event", "handle": subscription.handle, "event": event.model_dump(mode="json")})
            except Exception:
                logger.info("Dropping subscription %s: client send failed", subscription.handle, exc_info=True)
                self.core.broker.unsubscribe(subscription)
                return

    async def _acknowledge_delivery(self, event: ChangeEvent) -> None:
        record = event.record
        if (
            event.source == SOURCE_MESSAGES
            and event.type == "INSERT"
            and record["receiver_id"] == self.user_id
            and record["status"] == STATUS_SENT
        ):
            await self._best_effort("mark delivered", self.core.messages.mark_delivered(record["id"], self.user_id))

    async def _replay(self, since_ms: int) -> None:
        for message in await self.core.messages.list_incoming_since(self.user_id, from_ms(since_ms)):
            await self._send({"type": "replay", "message": message.model_dump(mode="json")})

    async def _send_error(self, command: Dict[str, Any], exc: DmChatError) -> None:
        await self._send({"type": "error", "command": command.get("type"), "ref": command.get("ref"), **exc.to_dict()})

    async def _send(self, frame: Dict[str, Any]) -> None:
        await self._send_json(frame)
