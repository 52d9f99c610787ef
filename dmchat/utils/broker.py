"""
In-process fan-out of store change events to live subscriptions.

Every store (messages, typing indicators, presence) publishes a
``ChangeEvent`` after a successful write. The broker walks the active
subscriptions, evaluates each filter against the event and pushes matching
events onto that subscription's bounded queue. ``dispatch`` never awaits, so
a slow consumer cannot stall the producer or the other subscribers; when a
queue is full the overflow policy either drops the oldest pending event or
closes the subscription.

This is a live push channel, not a durable queue: nothing is replayed after
a subscription is closed or a client reconnects. Clients recover missed
messages with ``MessageStore.list_conversation``.

When a Redis bus is configured, published events are relayed to the other
server processes, which dispatch them to their own subscribers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from dmchat import config
from dmchat.core.errors import ForbiddenError, ValidationError
from dmchat.schemas.events import SOURCE_MESSAGES, SOURCE_PRESENCE, SOURCE_TYPING, ChangeEvent


logger = logging.getLogger(__name__)

OVERFLOW_DROP_OLDEST = "drop_oldest"
OVERFLOW_DISCONNECT = "disconnect"

_REQUIRED_FIELDS = {
    SOURCE_MESSAGES: ("id", "sender_id", "receiver_id", "status"),
    SOURCE_TYPING: ("user_id", "conversation_partner_id", "is_typing"),
    SOURCE_PRESENCE: ("user_id", "is_online"),
}


class SubscriptionClosed(Exception):

    def __init__(self, handle: str, overflowed: bool = False) -> None:
        self.handle = handle
        self.overflowed = overflowed
        super().__init__(f"subscription {handle} closed" + (" after overflow" if overflowed else ""))


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class SubscriptionFilter:

    kind: str = ""
    source: str = ""

    def matches(self, event: ChangeEvent) -> bool:
        raise NotImplementedError

    def owner(self) -> Optional[str]:
        """User the filter is scoped to; None for global filters."""
        return None

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class IncomingFilter(SubscriptionFilter):
    """Messages addressed to ``user_id`` (inserts and status updates)."""

    user_id: str
    kind = "incoming"
    source = SOURCE_MESSAGES

    def matches(self, event: ChangeEvent) -> bool:
        return event.record["receiver_id"] == self.user_id

    def owner(self) -> Optional[str]:
        return self.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id}


@dataclass(frozen=True)
class OutgoingFilter(SubscriptionFilter):
    """Messages sent by ``user_id``; carries read receipts back to the sender."""

    user_id: str
    kind = "outgoing"
    source = SOURCE_MESSAGES

    def matches(self, event: ChangeEvent) -> bool:
        return event.record["sender_id"] == self.user_id

    def owner(self) -> Optional[str]:
        return self.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id}


@dataclass(frozen=True)
class ConversationFilter(SubscriptionFilter):

    user_id: str
    partner_id: str
    kind = "conversation"
    source = SOURCE_MESSAGES

    def matches(self, event: ChangeEvent) -> bool:
        sender, receiver = event.record["sender_id"], event.record["receiver_id"]
        return (sender == self.user_id and receiver == self.partner_id) or (
            sender == self.partner_id and receiver == self.user_id
        )

    def owner(self) -> Optional[str]:
        return self.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id, "partner_id": self.partner_id}


@dataclass(frozen=True)
class TypingFilter(SubscriptionFilter):
    """``user_id`` watching ``partner_id`` type to them."""

    user_id: str
    partner_id: str
    kind = "typing"
    source = SOURCE_TYPING

    def matches(self, event: ChangeEvent) -> bool:
        return (
            event.record["user_id"] == self.partner_id
            and event.record["conversation_partner_id"] == self.user_id
        )

    def owner(self) -> Optional[str]:
        return self.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id, "partner_id": self.partner_id}


@dataclass(frozen=True)
class PresenceFilter(SubscriptionFilter):

    kind = "presence"
    source = SOURCE_PRESENCE

    def matches(self, event: ChangeEvent) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind}


def filter_from_dict(user_id: str, data: Dict[str, Any]) -> SubscriptionFilter:
    """Build a filter from a client command; the subscriber is always ``user_id``."""
    kind = data.get("kind")
    partner_id = data.get("partner_id")
    if kind == "incoming":
        return IncomingFilter(user_id)
    if kind == "outgoing":
        return OutgoingFilter(user_id)
    if kind == "presence":
        return PresenceFilter()
    if kind in ("conversation", "typing"):
        if not partner_id:
            raise ValidationError(f"'{kind}' filter requires partner_id", details={"kind": kind})
        if kind == "conversation":
            return ConversationFilter(user_id, partner_id)
        return TypingFilter(user_id, partner_id)
    raise ValidationError(f"Unknown filter kind: {kind}", details={"kind": kind})


# ---------------------------------------------------------------------------
# Connections and subscriptions
# ---------------------------------------------------------------------------


class Connection:
    """One authenticated client connection; owns any number of subscriptions."""

    def __init__(self, user_id: str, connection_id: Optional[str] = None) -> None:
        self.user_id = user_id
        self.id = connection_id or uuid.uuid4().hex
        self.subscriptions: Dict[str, "Subscription"] = {}

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r})"


_CLOSED = object()


class Subscription:

    def __init__(self, connection: Connection, filter: SubscriptionFilter, maxsize: int, overflow_policy: str) -> None:
        self.handle = uuid.uuid4().hex
        self.connection = connection
        self.filter = filter
        self.overflow_policy = overflow_policy
        self.dropped = 0
        self.closed = False
        self.overflowed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def offer(self, event: ChangeEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        if self.overflow_policy == OVERFLOW_DISCONNECT:
            logger.warning("Subscription %s overflowed; disconnecting (%s)", self.handle, self.connection)
            self.overflowed = True
            self.close()
            return False
        self._queue.get_nowait()
        self.dropped += 1
        self._queue.put_nowait(event)
        logger.debug("Subscription %s full; dropped oldest event (%d dropped)", self.handle, self.dropped)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> Optional[ChangeEvent]:
        """Next queued event or None; raises SubscriptionClosed once closed and drained."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed(self.handle, self.overflowed)
        return item

    async def get(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed(self.handle, self.overflowed)
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration

    def __repr__(self) -> str:
        return f"Subscription(handle={self.handle!r}, filter={self.filter!r})"


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------


class Broker:

    def __init__(
        self,
        queue_size: Optional[int] = None,
        overflow_policy: Optional[str] = None,
        bus=None,
        channel: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        self.queue_size = queue_size or config.SUBSCRIBER_QUEUE_SIZE
        self.overflow_policy = overflow_policy or config.SUBSCRIBER_OVERFLOW_POLICY
        if self.overflow_policy not in (OVERFLOW_DROP_OLDEST, OVERFLOW_DISCONNECT):
            raise ValueError(f"Unknown overflow policy: {self.overflow_policy}")
        self.instance_id = instance_id or uuid.uuid4().hex
        self._bus = bus
        self._channel = channel or config.REALTIME_CHANNEL
        self._subscriptions: Dict[str, Subscription] = {}
        self._relay = None
        self._relay_task: Optional[asyncio.Task] = None

    # -- subscription management -------------------------------------------------

    def subscribe(self, connection: Connection, filter: SubscriptionFilter) -> Subscription:
        owner = filter.owner()
        if owner is not None and owner != connection.user_id:
            raise ForbiddenError(
                "Cannot subscribe on behalf of another user",
                details={"filter": filter.to_dict(), "user_id": connection.user_id},
            )
        subscription = Subscription(connection, filter, self.queue_size, self.overflow_policy)
        self._subscriptions[subscription.handle] = subscription
        connection.subscriptions[subscription.handle] = subscription
        logger.debug("Subscribed %s to %s", connection, filter.to_dict())
        return subscription

    def unsubscribe(self, handle: Union[Subscription, str]) -> None:
        key = handle.handle if isinstance(handle, Subscription) else handle
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return
        subscription.connection.subscriptions.pop(key, None)
        subscription.close()

    def close_connection(self, connection: Connection) -> None:
        for handle in list(connection.subscriptions):
            self.unsubscribe(handle)

    def get_subscription(self, handle: str) -> Optional[Subscription]:
        return self._subscriptions.get(handle)

    @property
    def active_subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions.values())

    # -- delivery ----------------------------------------------------------------

    def _coerce(self, event: Union[ChangeEvent, Dict[str, Any]]) -> Optional[ChangeEvent]:
        if not isinstance(event, ChangeEvent):
            try:
                event = ChangeEvent.model_validate(event)
            except PydanticValidationError as exc:
                logger.warning("Dropping malformed event: %s", exc)
                return None
        missing = [f for f in _REQUIRED_FIELDS[event.source] if f not in event.record]
        if missing:
            logger.warning("Dropping %s event missing fields %s", event.source, missing)
            return None
        return event

    def dispatch(self, event: Union[ChangeEvent, Dict[str, Any]]) -> int:
        """Fan an event out to matching local subscriptions; returns how many accepted it."""
        checked = self._coerce(event)
        if checked is None:
            return 0
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.filter.source != checked.source:
                continue
            try:
                if not subscription.filter.matches(checked):
                    continue
                if subscription.offer(checked):
                    delivered += 1
            except Exception:
                logger.exception("Delivery to %s failed", subscription)
                continue
            if subscription.closed:
                self.unsubscribe(subscription)
        return delivered

    async def publish(self, event: ChangeEvent) -> int:
        if event.origin is None:
            event = event.model_copy(update={"origin": self.instance_id})
        delivered = self.dispatch(event)
        if self._bus is not None and getattr(self._bus, "enabled", False):
            try:
                await self._bus.publish(self._channel, event.model_dump_json())
            except Exception:
                logger.warning("Relay publish failed for %s event", event.source, exc_info=True)
        return delivered

    # -- cross-process relay -----------------------------------------------------

    async def _on_relay_message(self, raw: str) -> None:
        try:
            event = ChangeEvent.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Dropping malformed relayed event: %s", exc)
            return
        if event.origin == self.instance_id:
            return
        self.dispatch(event)

    async def start_relay(self) -> None:
        if self._bus is None or not getattr(self._bus, "enabled", False) or self._relay_task:
            return
        self._relay = await self._bus.subscribe(self._channel, self._on_relay_message)
        self._relay_task = asyncio.create_task(self._relay.run())
        logger.info("Relaying events over %s", self._channel)

    async def stop_relay(self) -> None:
        if self._relay is not None:
            await self._relay.cancel()
        if self._relay_task is not None:
            self._relay_task.cancel()
            try:
                await self._relay_task
            except asyncio.CancelledError:
                pass
        self._relay = None
        self._relay_task = None
