"""
Tests for the presence tracker, the typing tracker and the client-side
typing auto-clear timer.
"""

import asyncio
from datetime import timedelta

import pytest

from dmchat.core.errors import ValidationError
from dmchat.utils.broker import PresenceFilter, TypingFilter
from dmchat.utils.clock import utcnow
from dmchat.utils.typing_timer import TypingTimer
from helpers import drain, next_event


# =============================================================================
# Presence
# =============================================================================


class TestPresenceTracker:

    async def test_unknown_user_has_no_presence(self, core):
        assert await core.presence.get("nobody") is None

    async def test_set_online_upserts_single_row(self, core, db):
        await core.presence.set_online("alice", True)
        await core.presence.set_online("alice", False)
        await core.presence.set_online("alice", True)

        assert await db["user_presence"].count_documents({"user_id": "alice"}) == 1
        presence = await core.presence.get("alice")
        assert presence.is_online is True

    async def test_last_seen_advances(self, core):
        first = await core.presence.set_online("alice", True)
        await asyncio.sleep(0.01)
        second = await core.presence.set_online("alice", False)

        assert second.last_seen >= first.last_seen
        assert second.is_online is False

    async def test_every_upsert_emits(self, core, broker, bob_conn):
        sub = broker.subscribe(bob_conn, PresenceFilter())

        await core.presence.set_online("alice", True)
        await core.presence.heartbeat("alice")
        await core.presence.set_online("alice", False)

        events = drain(sub)
        assert [e.record["is_online"] for e in events] == [True, True, False]
        assert all(e.record["user_id"] == "alice" for e in events)

    async def test_get_many(self, core):
        await core.presence.set_online("alice", True)
        await core.presence.set_online("bob", False)

        states = await core.presence.get_many(["alice", "bob", "carol"])

        assert set(states) == {"alice", "bob"}
        assert states["alice"].is_online and not states["bob"].is_online


class TestPresenceTimeout:
    """Users whose heartbeat stops are flipped offline by the sweeper."""

    async def test_sweep_marks_stale_users_offline(self, core, broker, bob_conn):
        await core.presence.set_online("alice", True)
        sub = broker.subscribe(bob_conn, PresenceFilter())
        later = utcnow() + timedelta(seconds=core.presence.timeout_seconds + 1)

        expired = await core.presence.sweep(now=later)

        assert expired == ["alice"]
        assert (await core.presence.get("alice")).is_online is False
        (event,) = drain(sub)
        assert event.record["is_online"] is False

    async def test_sweep_keeps_fresh_users(self, core):
        await core.presence.set_online("alice", True)

        assert await core.presence.sweep() == []
        assert (await core.presence.get("alice")).is_online is True

    async def test_sweep_ignores_offline_users(self, core):
        await core.presence.set_online("alice", False)
        later = utcnow() + timedelta(minutes=5)

        assert await core.presence.sweep(now=later) == []

    async def test_sweep_keeps_last_heartbeat_as_last_seen(self, core):
        online = await core.presence.set_online("alice", True)
        later = utcnow() + timedelta(minutes=5)

        await core.presence.sweep(now=later)

        assert (await core.presence.get("alice")).last_seen == online.last_seen

    async def test_run_sweeper_loop(self, core):
        core.presence.timeout_seconds = 0.01
        await core.presence.set_online("alice", True)

        task = asyncio.create_task(core.presence.run_sweeper(interval=0.02))
        try:
            for _ in range(50):
                await asyncio.sleep(0.02)
                if not (await core.presence.get("alice")).is_online:
                    break
        finally:
            task.cancel()

        assert (await core.presence.get("alice")).is_online is False


# =============================================================================
# Typing
# =============================================================================


class TestTypingTracker:

    async def test_last_write_wins(self, core, db):
        await core.typing.set_typing("alice", "bob", True)
        await core.typing.set_typing("alice", "bob", False)
        await core.typing.set_typing("alice", "bob", True)

        indicator = await core.typing.get("alice", "bob")
        assert indicator.is_typing is True
        assert await db["typing_indicators"].count_documents({}) == 1

    async def test_rows_are_per_ordered_pair(self, core):
        await core.typing.set_typing("alice", "bob", True)
        await core.typing.set_typing("bob", "alice", False)

        assert (await core.typing.get("alice", "bob")).is_typing is True
        assert (await core.typing.get("bob", "alice")).is_typing is False

    async def test_self_typing_rejected(self, core):
        with pytest.raises(ValidationError):
            await core.typing.set_typing("alice", "alice", True)

    async def test_events_scoped_to_pair(self, core, broker, bob_conn):
        watching_alice = broker.subscribe(bob_conn, TypingFilter("bob", "alice"))
        watching_carol = broker.subscribe(bob_conn, TypingFilter("bob", "carol"))

        await core.typing.set_typing("alice", "bob", True)
        await core.typing.set_typing("bob", "alice", True)

        (event,) = drain(watching_alice)
        assert event.record == {
            "user_id": "alice",
            "conversation_partner_id": "bob",
            "is_typing": True,
            "updated_at": event.record["updated_at"],
        }
        assert drain(watching_carol) == []


class TestTypingTimer:

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def timer(self, calls):
        async def callback(partner_id, is_typing):
            calls.append((partner_id, is_typing))

        return TypingTimer(callback, idle_seconds=0.05)

    async def test_reports_typing_once_per_burst(self, timer, calls):
        await timer.user_pressed("bob")
        await timer.user_pressed("bob")
        await timer.user_pressed("bob")

        assert calls == [("bob", True)]
        await timer.stop_all()

    async def test_auto_clears_after_idle_window(self, timer, calls):
        await timer.user_pressed("bob")
        await asyncio.sleep(0.12)

        assert calls == [("bob", True), ("bob", False)]
        assert not timer.is_typing("bob")

    async def test_keystroke_restarts_window(self, timer, calls):
        await timer.user_pressed("bob")
        await asyncio.sleep(0.03)
        await timer.user_pressed("bob")
        await asyncio.sleep(0.03)

        assert calls == [("bob", True)]
        await asyncio.sleep(0.06)
        assert calls == [("bob", True), ("bob", False)]

    async def test_stop_clears_immediately_and_cancels(self, timer, calls):
        await timer.user_pressed("bob")
        await timer.stop("bob")
        await asyncio.sleep(0.08)

        assert calls == [("bob", True), ("bob", False)]

    async def test_stop_without_typing_is_silent(self, timer, calls):
        await timer.stop("bob")
        assert calls == []

    async def test_timers_are_per_partner(self, timer, calls):
        await timer.user_pressed("bob")
        await timer.user_pressed("carol")
        await timer.stop("bob")

        assert timer.is_typing("carol")
        await timer.stop_all()
        assert calls[-1] == ("carol", False)

    async def test_subscriber_sees_auto_clear(self, core, broker, bob_conn):
        """setTyping(alice, bob, true) then silence: bob's typing(bob, alice) sees false."""
        sub = broker.subscribe(bob_conn, TypingFilter("bob", "alice"))

        async def push(partner_id, is_typing):
            await core.typing.set_typing("alice", partner_id, is_typing)

        timer = TypingTimer(push, idle_seconds=0.05)
        await timer.user_pressed("bob")

        started = await next_event(sub)
        cleared = await next_event(sub)
        assert started.record["is_typing"] is True
        assert cleared.record["is_typing"] is False
        assert (await core.typing.get("alice", "bob")).is_typing is False
