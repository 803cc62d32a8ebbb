"""Notification bus tests — fan-out, slow subscribers, upstream loss.

Learn: The memory store pushes every mutation into its open cursors
synchronously, and the bus drains whatever is buffered without yielding.
So a burst of N inserts reaches the fan-out as one batch: subscribers
that must see all N need capacity >= N, while a subscriber that never
reads sees its bounded queue overflow deterministically.
"""

import asyncio

import pytest

from profilecast.realtime.bus import (
    Backoff,
    CloseReason,
    NotificationBus,
    SlowPolicy,
    Subscription,
    SubscriptionClosedError,
    SubscriptionState,
)
from profilecast.store.base import ChangeEvent, ChangeKind, Profile


async def _insert_many(store, n: int) -> list[Profile]:
    return [await store.insert(f"user{i}@example.com") for i in range(n)]


async def _drain(subscription: Subscription, n: int, timeout: float = 2) -> list[ChangeEvent]:
    return [await asyncio.wait_for(subscription.get(), timeout) for _ in range(n)]


# ─── Delivery ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_every_subscriber_gets_every_event_in_order(bus, store):
    subs = [bus.subscribe(capacity=100) for _ in range(3)]

    profiles = await _insert_many(store, 50)

    expected = [p.id for p in profiles]
    for sub in subs:
        events = await _drain(sub, 50)
        assert [e.profile.id for e in events] == expected
        assert all(e.kind is ChangeKind.INSERT for e in events)
        assert sub.delivered == 50
        assert sub.dropped == 0


@pytest.mark.asyncio
async def test_subscriber_sees_only_events_after_subscribe(bus, store):
    early = await store.insert("early@example.com")
    # Let the bus fan out the first insert before the late subscriber joins
    await asyncio.sleep(0.01)
    assert bus.get_stats()["published"] == 1

    late = bus.subscribe()
    later = await store.insert("later@example.com")

    event = await asyncio.wait_for(late.get(), 1)
    assert event.profile.id == later.id
    assert event.profile.id != early.id
    assert late.pending == 0


@pytest.mark.asyncio
async def test_mutation_kinds_carry_post_state(bus, store):
    sub = bus.subscribe()

    profile = await store.insert("a@example.com")
    await store.update(profile.id, "b@example.com")
    await store.delete(profile.id)

    events = await _drain(sub, 3)
    assert [(e.kind, e.profile.email) for e in events] == [
        (ChangeKind.INSERT, "a@example.com"),
        (ChangeKind.UPDATE, "b@example.com"),
        (ChangeKind.DELETE, "b@example.com"),
    ]


@pytest.mark.asyncio
async def test_missing_ids_produce_no_events(bus, store):
    sub = bus.subscribe()

    assert await store.update("missing", "x@example.com") is None
    assert await store.delete("missing") is None
    marker = await store.insert("marker@example.com")

    event = await asyncio.wait_for(sub.get(), 1)
    assert event.profile.id == marker.id


# ─── Slow subscribers ────────────────────────────────────


@pytest.mark.asyncio
async def test_stalled_subscriber_does_not_block_others(bus, store):
    fast = bus.subscribe(capacity=1000)
    stalled = bus.subscribe(capacity=4, policy=SlowPolicy.DROP_OLDEST)

    profiles = await _insert_many(store, 1000)

    events = await _drain(fast, 1000)
    assert [e.profile.id for e in events] == [p.id for p in profiles]

    # Bounded: never more than capacity queued, the rest counted as dropped
    assert stalled.pending == 4
    assert stalled.dropped == 996
    assert stalled.state is SubscriptionState.ACTIVE

    # DROP_OLDEST keeps the newest events
    kept = await _drain(stalled, 4)
    assert [e.profile.id for e in kept] == [p.id for p in profiles[-4:]]
    assert stalled.delivered + stalled.dropped == 1000


@pytest.mark.asyncio
async def test_drop_newest_keeps_oldest_events(bus, store):
    sub = bus.subscribe(capacity=3, policy=SlowPolicy.DROP_NEWEST)

    profiles = await _insert_many(store, 10)
    # Give the fan-out a turn before reading
    await asyncio.sleep(0.01)

    kept = await _drain(sub, 3)
    assert [e.profile.id for e in kept] == [p.id for p in profiles[:3]]
    assert sub.dropped == 7
    assert sub.delivered + sub.dropped == 10


@pytest.mark.asyncio
async def test_evict_policy_closes_overflowing_subscriber(bus, store):
    healthy = bus.subscribe(capacity=100)
    slow = bus.subscribe(capacity=2, policy=SlowPolicy.EVICT)

    await _insert_many(store, 5)
    await _drain(healthy, 5)

    assert slow.state is SubscriptionState.CLOSED
    assert slow.close_reason is CloseReason.SLOW_CONSUMER
    assert slow not in bus.subscriptions()
    assert bus.get_stats()["evictions"] == 1

    with pytest.raises(SubscriptionClosedError) as exc:
        await slow.get()
    assert exc.value.reason is CloseReason.SLOW_CONSUMER

    # Eviction of one subscriber leaves the others untouched
    assert healthy.state is SubscriptionState.ACTIVE
    assert healthy.delivered == 5


# ─── Registry ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(bus):
    sub = bus.subscribe()
    assert bus.subscriber_count == 1

    assert bus.unsubscribe(sub) is True
    assert bus.unsubscribe(sub) is False
    assert bus.subscriber_count == 0
    assert sub.state is SubscriptionState.CLOSED
    assert sub.close_reason is CloseReason.UNSUBSCRIBED


@pytest.mark.asyncio
async def test_unsubscribe_wakes_blocked_reader(bus):
    sub = bus.subscribe()
    reader = asyncio.create_task(sub.get())
    await asyncio.sleep(0)

    bus.unsubscribe(sub)

    with pytest.raises(SubscriptionClosedError):
        await asyncio.wait_for(reader, 1)


@pytest.mark.asyncio
async def test_unsubscribed_subscriber_gets_nothing_more(bus, store):
    sub = bus.subscribe()
    other = bus.subscribe()
    bus.unsubscribe(sub)

    await store.insert("a@example.com")
    await asyncio.wait_for(other.get(), 1)

    assert sub.delivered == 0
    assert sub.pending == 0


@pytest.mark.asyncio
async def test_subscribe_uses_bus_defaults(bus):
    sub = bus.subscribe()
    assert sub.capacity == 64
    assert sub.policy is SlowPolicy.DROP_OLDEST


def test_subscription_rejects_zero_capacity():
    with pytest.raises(ValueError):
        Subscription(capacity=0, policy=SlowPolicy.DROP_OLDEST)


@pytest.mark.asyncio
async def test_subscribe_rejects_zero_capacity(bus):
    with pytest.raises(ValueError):
        bus.subscribe(capacity=0)
    assert bus.subscriber_count == 0


# ─── Upstream loss ───────────────────────────────────────


@pytest.mark.asyncio
async def test_upstream_loss_sends_invalidate_then_reconnects(bus, store):
    old = bus.subscribe()

    assert store.reset_change_streams() == 1

    event = await asyncio.wait_for(old.get(), 1)
    assert event.kind is ChangeKind.INVALIDATE
    assert event.profile is None
    assert old.state is SubscriptionState.CLOSED
    assert old.close_reason is CloseReason.UPSTREAM_LOST
    with pytest.raises(SubscriptionClosedError):
        await old.get()

    # The bus reopens the upstream after backoff; new subscribers resume
    await asyncio.wait_for(bus.wait_connected(), timeout=2)
    new = bus.subscribe()
    profile = await store.insert("after@example.com")

    event = await asyncio.wait_for(new.get(), 1)
    assert event.profile.id == profile.id
    stats = bus.get_stats()
    assert stats["connects"] == 2
    assert stats["upstream_losses"] == 1


@pytest.mark.asyncio
async def test_invalidate_follows_queued_events(bus, store):
    sub = bus.subscribe()

    profiles = await _insert_many(store, 3)
    await asyncio.sleep(0.01)
    store.reset_change_streams()
    await asyncio.sleep(0.01)

    events = await _drain(sub, 4)
    assert [e.profile.id for e in events[:3]] == [p.id for p in profiles]
    assert events[3].is_invalidate


@pytest.mark.asyncio
async def test_reading_invalidate_clears_closing_count(bus, store):
    sub = bus.subscribe()
    store.reset_change_streams()
    await asyncio.sleep(0.05)
    assert bus.get_stats()["closing"] == 1

    event = await asyncio.wait_for(sub.get(), 1)
    assert event.is_invalidate
    assert sub.state is SubscriptionState.CLOSED
    assert bus.get_stats()["closing"] == 0

@pytest.mark.asyncio
async def test_undrained_closing_subscription_expires(bus, store):
    sub = bus.subscribe()

    store.reset_change_streams()
    await asyncio.sleep(0.05)
    assert sub.state is SubscriptionState.CLOSING
    assert sub.pending == 1

    # closing grace is 0.2s in the fixture
    await asyncio.sleep(0.4)
    assert sub.state is SubscriptionState.CLOSED
    assert sub.close_reason is CloseReason.UPSTREAM_LOST
    assert sub.dropped == 1
    assert bus.get_stats()["closing"] == 0


@pytest.mark.asyncio
async def test_bus_retries_until_store_returns(store):
    bus = NotificationBus(store, backoff_initial=0.01, backoff_max=0.02)
    # Store not connected yet: changes() fails and the bus backs off
    await bus.start()
    await asyncio.sleep(0.05)
    assert not bus.is_connected

    await store.connect()
    await asyncio.wait_for(bus.wait_connected(), timeout=2)
    assert bus.is_connected

    await bus.stop()
    await store.close()


# ─── Shutdown ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stop_closes_every_subscription(store):
    await store.connect()
    bus = NotificationBus(store)
    await bus.start()
    await asyncio.wait_for(bus.wait_connected(), timeout=2)
    subs = [bus.subscribe() for _ in range(3)]
    reader = asyncio.create_task(subs[0].get())
    await asyncio.sleep(0)

    await bus.stop()

    assert not bus.is_running
    assert bus.subscriber_count == 0
    assert store.open_cursors == 0
    for sub in subs:
        assert sub.state is SubscriptionState.CLOSED
        assert sub.close_reason is CloseReason.BUS_STOPPED
    with pytest.raises(SubscriptionClosedError):
        await asyncio.wait_for(reader, 1)

    await store.close()


@pytest.mark.asyncio
async def test_stop_closes_subscriptions_left_closing(bus, store):
    sub = bus.subscribe()
    store.reset_change_streams()
    await asyncio.sleep(0.05)
    assert sub.state is SubscriptionState.CLOSING

    await bus.stop()

    assert sub.state is SubscriptionState.CLOSED
    # Closed by the upstream loss that started it, not by the shutdown
    assert sub.close_reason is CloseReason.UPSTREAM_LOST
    assert bus.get_stats()["closing"] == 0
    with pytest.raises(SubscriptionClosedError):
        await asyncio.wait_for(sub.get(), 1)

    # Past the closing grace, nothing changes
    await asyncio.sleep(0.3)
    assert sub.state is SubscriptionState.CLOSED

# ─── Backoff ─────────────────────────────────────────────


def test_backoff_doubles_up_to_cap():
    backoff = Backoff(1.0, 30.0, uniform=lambda low, high: 1.0)
    delays = [backoff.next_delay() for _ in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


def test_backoff_reset_starts_over():
    backoff = Backoff(1.0, 30.0, uniform=lambda low, high: 1.0)
    for _ in range(4):
        backoff.next_delay()
    backoff.reset()
    assert backoff.next_delay() == 1.0


def test_backoff_jitter_bounds():
    backoff = Backoff(1.0, 30.0)
    base = 1.0
    for _ in range(20):
        delay = backoff.next_delay()
        assert 0.8 * base <= delay <= 1.2 * base
        base = min(base * 2, 30.0)
