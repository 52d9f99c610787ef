"""
Tests for the message store.

Covers validation on send, server-assigned ordering, conversation symmetry,
read/delivered transitions with their permission checks, retry
idempotency, pagination and the change events each write emits.
"""

from datetime import timedelta
from unittest import mock

import pytest

from dmchat.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from dmchat.utils.broker import ConversationFilter, IncomingFilter, OutgoingFilter
from helpers import drain


# =============================================================================
# send
# =============================================================================


class TestSend:
    """Validation and persistence on send."""

    async def test_send_returns_stored_record(self, core):
        message = await core.messages.send("alice", "bob", "  hello bob  ")

        assert message.content == "hello bob"
        assert message.status == "sent"
        assert message.sender_id == "alice"
        assert message.receiver_id == "bob"
        assert message.read_at is None
        assert message.created_at.tzinfo is not None

    async def test_send_then_list_contains_exactly_that_message(self, core):
        before = await core.messages.list_conversation("alice", "bob")
        message = await core.messages.send("alice", "bob", "hi")
        after = await core.messages.list_conversation("alice", "bob")

        new = [m for m in after if m not in before]
        assert new == [message]

    @pytest.mark.parametrize("content", ["", "   ", "\n\t"])
    async def test_empty_content_rejected(self, core, content):
        with pytest.raises(ValidationError) as exc_info:
            await core.messages.send("alice", "bob", content)
        assert exc_info.value.error_code == "EMPTY_CONTENT"
        assert await core.messages.list_conversation("alice", "bob") == []

    async def test_self_message_rejected(self, core):
        with pytest.raises(ValidationError) as exc_info:
            await core.messages.send("alice", "alice", "talking to myself")
        assert exc_info.value.error_code == "SELF_MESSAGE"

    async def test_overlong_content_rejected(self, core):
        with pytest.raises(ValidationError) as exc_info:
            await core.messages.send("alice", "bob", "x" * 10001)
        assert exc_info.value.error_code == "CONTENT_TOO_LONG"

    async def test_ids_increase(self, core):
        first = await core.messages.send("alice", "bob", "one")
        second = await core.messages.send("bob", "alice", "two")
        third = await core.messages.send("alice", "carol", "three")

        assert first.id < second.id < third.id
        assert first.created_at <= second.created_at <= third.created_at

    async def test_retry_with_client_message_id_is_idempotent(self, core, broker, alice_conn):
        sub = broker.subscribe(alice_conn, OutgoingFilter("alice"))

        first = await core.messages.send("alice", "bob", "draft", client_message_id="c-1")
        again = await core.messages.send("alice", "bob", "draft", client_message_id="c-1")

        assert again == first
        assert len(await core.messages.list_conversation("alice", "bob")) == 1
        assert len(drain(sub)) == 1

    async def test_client_message_id_is_scoped_to_sender(self, core):
        a = await core.messages.send("alice", "bob", "from alice", client_message_id="same")
        b = await core.messages.send("bob", "alice", "from bob", client_message_id="same")

        assert a.id != b.id

    async def test_concurrent_duplicate_returns_existing_row(self, core, broker, alice_conn):
        sub = broker.subscribe(alice_conn, OutgoingFilter("alice"))
        repo = core.messages._message_repo
        first = await core.messages.send("alice", "bob", "draft", client_message_id="c-1")
        real_lookup = repo.get_by_client_id
        lookups = []

        async def lookup_misses_first(sender_id, client_message_id):
            # the first lookup runs before the other send has stored its row
            lookups.append(client_message_id)
            if len(lookups) == 1:
                return None
            return await real_lookup(sender_id, client_message_id)

        with mock.patch.object(repo, "get_by_client_id", new=lookup_misses_first):
            again = await core.messages.send("alice", "bob", "draft", client_message_id="c-1")

        assert again == first
        assert len(lookups) == 2
        assert len(await core.messages.list_conversation("alice", "bob")) == 1
        assert len(drain(sub)) == 1

    async def test_client_message_id_unique_per_sender_in_storage(self, core):
        repo = core.messages._message_repo
        sent = await core.messages.send("alice", "bob", "once", client_message_id="c-9")

        with pytest.raises(ConflictError):
            await repo.save_message(sent.id + 100, "alice", "bob", "twice", sent.created_at, client_message_id="c-9")
        # rows without a client id never collide
        await repo.save_message(sent.id + 101, "alice", "bob", "a", sent.created_at)
        await repo.save_message(sent.id + 102, "alice", "bob", "b", sent.created_at)


# =============================================================================
# list_conversation
# =============================================================================


class TestListConversation:

    async def test_symmetric(self, core):
        await core.messages.send("alice", "bob", "1")
        await core.messages.send("bob", "alice", "2")
        await core.messages.send("alice", "bob", "3")

        assert await core.messages.list_conversation("alice", "bob") == await core.messages.list_conversation("bob", "alice")

    async def test_ordered_by_created_at_then_id(self, core):
        for i in range(5):
            sender, receiver = ("alice", "bob") if i % 2 == 0 else ("bob", "alice")
            await core.messages.send(sender, receiver, f"m{i}")

        messages = await core.messages.list_conversation("alice", "bob")

        assert [m.content for m in messages] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.sort_key for m in messages] == sorted(m.sort_key for m in messages)

    async def test_excludes_other_pairs(self, core):
        await core.messages.send("alice", "bob", "for bob")
        await core.messages.send("alice", "carol", "for carol")
        await core.messages.send("carol", "bob", "carol to bob")

        messages = await core.messages.list_conversation("alice", "bob")

        assert [m.content for m in messages] == ["for bob"]

    async def test_empty_conversation(self, core):
        assert await core.messages.list_conversation("alice", "bob") == []


class TestPageConversation:

    async def test_pages_walk_backwards(self, core):
        for i in range(5):
            await core.messages.send("alice", "bob", f"m{i}")

        page1, cursor = await core.messages.page_conversation("alice", "bob", limit=2)
        page2, cursor2 = await core.messages.page_conversation("alice", "bob", limit=2, cursor=cursor)
        page3, cursor3 = await core.messages.page_conversation("alice", "bob", limit=2, cursor=cursor2)

        assert [m.content for m in page1] == ["m3", "m4"]
        assert [m.content for m in page2] == ["m1", "m2"]
        assert [m.content for m in page3] == ["m0"]
        assert cursor3 is None

    async def test_malformed_cursor(self, core):
        with pytest.raises(ValidationError):
            await core.messages.page_conversation("alice", "bob", limit=2, cursor="not-a-cursor")


# =============================================================================
# Status transitions
# =============================================================================


class TestMarkRead:

    async def test_marks_read_and_sets_read_at(self, core):
        message = await core.messages.send("alice", "bob", "read me")

        updated = await core.messages.mark_read(message.id, "bob")

        assert updated.status == "read"
        assert updated.read_at is not None
        assert updated.created_at == message.created_at

    async def test_idempotent(self, core, broker, alice_conn):
        message = await core.messages.send("alice", "bob", "read me")
        sub = broker.subscribe(alice_conn, OutgoingFilter("alice"))

        once = await core.messages.mark_read(message.id, "bob")
        twice = await core.messages.mark_read(message.id, "bob")

        assert once == twice
        events = drain(sub)
        assert len(events) == 1
        assert events[0].type == "UPDATE"

    async def test_from_delivered(self, core):
        message = await core.messages.send("alice", "bob", "hi")
        await core.messages.mark_delivered(message.id, "bob")

        updated = await core.messages.mark_read(message.id, "bob")

        assert updated.status == "read"

    async def test_unknown_message(self, core):
        with pytest.raises(NotFoundError):
            await core.messages.mark_read(999, "bob")

    async def test_only_receiver_may_mark_read(self, core):
        message = await core.messages.send("alice", "bob", "hi")

        with pytest.raises(ForbiddenError):
            await core.messages.mark_read(message.id, "alice")
        with pytest.raises(ForbiddenError):
            await core.messages.mark_read(message.id, "carol")

        assert (await core.messages.get(message.id)).status == "sent"


class TestMarkDelivered:

    async def test_sent_to_delivered(self, core):
        message = await core.messages.send("alice", "bob", "hi")

        updated = await core.messages.mark_delivered(message.id, "bob")

        assert updated.status == "delivered"
        assert updated.read_at is None

    async def test_never_downgrades_read(self, core):
        message = await core.messages.send("alice", "bob", "hi")
        await core.messages.mark_read(message.id, "bob")

        updated = await core.messages.mark_delivered(message.id, "bob")

        assert updated.status == "read"

    async def test_only_receiver(self, core):
        message = await core.messages.send("alice", "bob", "hi")

        with pytest.raises(ForbiddenError):
            await core.messages.mark_delivered(message.id, "alice")


class TestMarkConversationRead:

    async def test_marks_only_incoming_from_partner(self, core):
        await core.messages.send("alice", "bob", "1")
        await core.messages.send("alice", "bob", "2")
        mine = await core.messages.send("bob", "alice", "reply")
        other = await core.messages.send("carol", "bob", "from carol")

        count = await core.messages.mark_conversation_read("bob", "alice")

        assert count == 2
        assert (await core.messages.get(mine.id)).status == "sent"
        assert (await core.messages.get(other.id)).status == "sent"
        assert await core.messages.mark_conversation_read("bob", "alice") == 0


# =============================================================================
# Events
# =============================================================================


class TestEvents:

    async def test_send_emits_insert(self, core, broker, bob_conn):
        sub = broker.subscribe(bob_conn, IncomingFilter("bob"))

        message = await core.messages.send("alice", "bob", "hi")

        (event,) = drain(sub)
        assert event.source == "messages"
        assert event.type == "INSERT"
        assert event.record["id"] == message.id
        assert event.record["content"] == "hi"

    async def test_update_carries_previous_status(self, core, broker, alice_conn):
        message = await core.messages.send("alice", "bob", "hi")
        sub = broker.subscribe(alice_conn, ConversationFilter("alice", "bob"))

        await core.messages.mark_read(message.id, "bob")

        (event,) = drain(sub)
        assert event.old["status"] == "sent"
        assert event.record["status"] == "read"

    async def test_failed_send_emits_nothing(self, core, broker, bob_conn):
        sub = broker.subscribe(bob_conn, IncomingFilter("bob"))

        with pytest.raises(ValidationError):
            await core.messages.send("alice", "bob", "   ")

        assert drain(sub) == []

    async def test_incoming_since(self, core):
        first = await core.messages.send("alice", "bob", "old")
        second = await core.messages.send("alice", "bob", "new")
        await core.messages.send("bob", "alice", "not incoming for bob")

        missed = await core.messages.list_incoming_since("bob", first.created_at - timedelta(milliseconds=1))

        assert missed == [first, second]
