import asyncio


ALICE = {"_id": "alice", "email": "alice@example.com", "full_name": "Alice Liddell"}
BOB = {"_id": "bob", "email": "bob@example.com", "full_name": "Bob Builder"}
CAROL = {"_id": "carol", "email": "carol@example.com", "full_name": None}


async def next_event(subscription, timeout: float = 1.0):
    """Wait for the next event on a subscription."""
    return await asyncio.wait_for(subscription.get(), timeout)


def drain(subscription):
    """Pull every event already queued on a subscription."""
    events = []
    while True:
        event = subscription.get_nowait()
        if event is None:
            return events
        events.append(event)
