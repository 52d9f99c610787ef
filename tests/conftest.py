"""
Shared pytest fixtures.

Every test gets a fresh in-memory motor database (mongomock-motor) and its
own broker, so no MongoDB or Redis server is needed.
"""

import pytest
from mongomock_motor import AsyncMongoMockClient

from dmchat.services.core import ChatCore
from dmchat.utils.broker import Broker, Connection
from helpers import ALICE, BOB, CAROL


# =============================================================================
# Storage and core
# =============================================================================


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    return AsyncMongoMockClient()["dmchat_test"]


@pytest.fixture
async def users(db):
    """Seed the profile collection with three users."""
    await db["users"].insert_many([dict(ALICE), dict(BOB), dict(CAROL)])
    return {"alice": ALICE, "bob": BOB, "carol": CAROL}


@pytest.fixture
def broker():
    """Broker with small queues so overflow is easy to trigger."""
    return Broker(queue_size=32)


@pytest.fixture
async def core(db, broker, users):
    """Started ChatCore without the background presence sweeper."""
    chat_core = ChatCore(db, broker)
    await chat_core.start(sweep=False)
    yield chat_core
    await chat_core.stop()


# =============================================================================
# Connections
# =============================================================================


@pytest.fixture
def alice_conn():
    return Connection("alice")


@pytest.fixture
def bob_conn():
    return Connection("bob")

