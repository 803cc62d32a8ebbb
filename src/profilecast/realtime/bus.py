"""Notification bus — one upstream change feed, many bounded subscribers.

Learn: The bus owns a single fan-out task. It opens a change cursor on the
store and, for each event, offers it to every ACTIVE subscription without
ever waiting on a subscriber. Each subscription has its own bounded queue
and slow-subscriber policy, so one stalled WebSocket cannot delay delivery
to anyone else:

- DROP_OLDEST  — queue full → drop the head, append the new event
- DROP_NEWEST  — queue full → discard the new event for this subscriber
- EVICT        — queue full → close the subscription (SLOW_CONSUMER)

Every discarded event increments the subscription's `dropped` counter, so
`delivered + dropped` always accounts for everything the bus offered.

Subscription lifecycle (monotonic, no resurrection):

    ACTIVE ──unsubscribe / evict / stop──────────────► CLOSED
    ACTIVE ──upstream lost──► CLOSING ──INVALIDATE read──► CLOSED
                                      ──closing grace expired──► CLOSED

When the upstream cursor yields INVALIDATE, ends, or fails, every open
subscription gets a terminal INVALIDATE and is closed; the loop then
reopens the upstream after an exponential backoff with jitter.

The registry is guarded by a threading.Lock held only to add/remove
entries or copy a snapshot; fan-out iterates the snapshot lock-free.
"""

import asyncio
import enum
import random
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from profilecast.store.base import ChangeCursor, ChangeEvent, ProfileStore

logger = structlog.get_logger()


class SlowPolicy(str, enum.Enum):
    DROP_OLDEST = "DROP_OLDEST"
    DROP_NEWEST = "DROP_NEWEST"
    EVICT = "EVICT"


class SubscriptionState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


class CloseReason(str, enum.Enum):
    UNSUBSCRIBED = "UNSUBSCRIBED"
    SLOW_CONSUMER = "SLOW_CONSUMER"
    UPSTREAM_LOST = "UPSTREAM_LOST"
    BUS_STOPPED = "BUS_STOPPED"


class SlowConsumerError(Exception):
    """Raised by Subscription.offer() when an EVICT subscription overflows."""


class SubscriptionClosedError(Exception):
    """Raised by Subscription.get() once the subscription is closed and drained."""

    def __init__(self, reason: Optional[CloseReason]):
        super().__init__(f"Subscription closed ({reason.value if reason else 'unknown'})")
        self.reason = reason


# Wakes a consumer blocked in get() when the subscription is closed.
_CLOSE = object()


class Subscription:
    """A bus-owned bounded FIFO of change events for one consumer.

    Single producer (the bus fan-out task), single consumer (a WebSocket
    writer). Consumers only read; closing goes through the bus.
    """

    def __init__(
        self,
        capacity: int,
        policy: SlowPolicy,
        on_closed: Optional[Callable[["Subscription"], None]] = None,
    ):
        if capacity < 1:
            raise ValueError("Subscription capacity must be at least 1")
        self.id = str(uuid.uuid4())
        self.capacity = capacity
        self.policy = policy
        self.state = SubscriptionState.ACTIVE
        self.close_reason: Optional[CloseReason] = None
        self.delivered = 0
        self.dropped = 0
        self.created_at = datetime.now(timezone.utc)
        self._on_closed = on_closed
        # Capacity is enforced in offer(); the queue itself is unbounded so
        # the close marker never competes with events for a slot.
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def pending(self) -> int:
        """Events queued and not yet read."""
        if self.state is SubscriptionState.CLOSED:
            return 0
        return self._queue.qsize()

    # ─── Producer side (bus only) ────────────────────────

    def offer(self, event: ChangeEvent) -> bool:
        """Enqueue without blocking. Returns False if the event was not queued.

        Raises SlowConsumerError when the queue is full under EVICT.
        """
        if self.state is not SubscriptionState.ACTIVE:
            return False

        if self._queue.qsize() >= self.capacity:
            if self.policy is SlowPolicy.DROP_OLDEST:
                self._queue.get_nowait()
                self.dropped += 1
            elif self.policy is SlowPolicy.DROP_NEWEST:
                self.dropped += 1
                return False
            else:
                self.dropped += 1
                raise SlowConsumerError(
                    f"Subscription {self.id} exceeded its queue capacity ({self.capacity})"
                )

        self._queue.put_nowait(event)
        return True

    def terminate(self, reason: CloseReason, final_event: ChangeEvent) -> bool:
        """ACTIVE → CLOSING: queue a terminal event the consumer can still read."""
        if self.state is not SubscriptionState.ACTIVE:
            return False
        if self._queue.qsize() >= self.capacity:
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(final_event)
        self.state = SubscriptionState.CLOSING
        self.close_reason = reason
        return True

    def close(self, reason: CloseReason) -> bool:
        """ACTIVE/CLOSING → CLOSED, dropping whatever is still queued.

        Idempotent: returns False if already closed. A CLOSING subscription
        keeps the reason it was terminated with.
        """
        if self.state is SubscriptionState.CLOSED:
            return False
        while not self._queue.empty():
            self._queue.get_nowait()
            self.dropped += 1
        if self.close_reason is None:
            self.close_reason = reason
        self.state = SubscriptionState.CLOSED
        self._queue.put_nowait(_CLOSE)
        self._notify_closed()
        return True

    # ─── Consumer side ───────────────────────────────────

    async def get(self) -> ChangeEvent:
        """Wait for the next event. Raises SubscriptionClosedError when done."""
        if self.state is SubscriptionState.CLOSED:
            raise SubscriptionClosedError(self.close_reason)
        item = await self._queue.get()
        if item is _CLOSE:
            raise SubscriptionClosedError(self.close_reason)
        self.delivered += 1
        if self.state is SubscriptionState.CLOSING and self._queue.empty():
            self.state = SubscriptionState.CLOSED
            self._notify_closed()
        return item

    def _notify_closed(self) -> None:
        if self._on_closed is not None:
            self._on_closed(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        try:
            return await self.get()
        except SubscriptionClosedError:
            raise StopAsyncIteration

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "policy": self.policy.value,
            "capacity": self.capacity,
            "pending": self.pending,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "close_reason": self.close_reason.value if self.close_reason else None,
        }


class Backoff:
    """Exponential backoff with multiplicative jitter.

    Base delay starts at `initial`, doubles per attempt, capped at
    `maximum`; each returned delay is the base scaled by a factor drawn
    uniformly from [1 - jitter, 1 + jitter].
    """

    def __init__(
        self,
        initial: float,
        maximum: float,
        jitter: float = 0.2,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.initial = initial
        self.maximum = maximum
        self.jitter = jitter
        self._uniform = uniform
        self._base = initial

    def next_delay(self) -> float:
        base = self._base
        self._base = min(self._base * 2, self.maximum)
        return base * self._uniform(1 - self.jitter, 1 + self.jitter)

    def reset(self) -> None:
        self._base = self.initial


@dataclass
class BusStats:
    """Runtime statistics for monitoring."""
    published: int = 0
    connects: int = 0
    upstream_losses: int = 0
    evictions: int = 0
    started_at: Optional[datetime] = None


class NotificationBus:
    """Multicast the store's change feed to a dynamic set of subscriptions."""

    def __init__(
        self,
        store: ProfileStore,
        default_capacity: int = 64,
        policy: SlowPolicy = SlowPolicy.DROP_OLDEST,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        closing_grace: float = 5.0,
    ):
        self.store = store
        self.default_capacity = default_capacity
        self.policy = policy
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.closing_grace = closing_grace
        self.stats = BusStats()

        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}
        self._closing: dict[str, tuple[Subscription, asyncio.TimerHandle]] = {}
        self._connected = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ─── Subscriber registry ─────────────────────────────

    def subscribe(
        self,
        capacity: Optional[int] = None,
        policy: Optional[SlowPolicy] = None,
    ) -> Subscription:
        """Register a subscriber. Only events emitted from now on are delivered."""
        subscription = Subscription(
            capacity=capacity if capacity is not None else self.default_capacity,
            policy=policy if policy is not None else self.policy,
            on_closed=self._forget_closing,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
            count = len(self._subscriptions)
        logger.info(
            "bus.subscribed",
            subscription_id=subscription.id,
            capacity=subscription.capacity,
            policy=subscription.policy.value,
            subscribers=count,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Close and forget a subscription. Idempotent."""
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        self._forget_closing(subscription)

        closed = subscription.close(CloseReason.UNSUBSCRIBED)
        if closed:
            logger.info(
                "bus.unsubscribed",
                subscription_id=subscription.id,
                reason=subscription.close_reason.value,
                delivered=subscription.delivered,
                dropped=subscription.dropped,
            )
        return closed

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscriptions(self) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.values())

    # ─── Lifecycle ───────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def start(self) -> None:
        """Spawn the fan-out loop. Returns immediately."""
        if self._task is not None:
            return
        self._running = True
        self.stats.started_at = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._run(), name="notification-bus")
        logger.info("bus.started", policy=self.policy.value, capacity=self.default_capacity)

    async def stop(self) -> None:
        """Stop fan-out, release the upstream and close every subscription."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        with self._lock:
            remaining = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in remaining:
            subscription.close(CloseReason.BUS_STOPPED)

        # Subscriptions left CLOSING by an upstream loss are no longer registered
        closing = list(self._closing.values())
        self._closing.clear()
        for subscription, handle in closing:
            handle.cancel()
            subscription.close(CloseReason.BUS_STOPPED)

        logger.info(
            "bus.stopped",
            closed=len(remaining) + len(closing),
            published=self.stats.published,
            evictions=self.stats.evictions,
        )

    async def wait_connected(self) -> None:
        """Wait until an upstream cursor is open."""
        await self._connected.wait()

    def get_stats(self) -> dict:
        """Return bus statistics for monitoring."""
        return {
            "running": self._running,
            "connected": self.is_connected,
            "subscribers": self.subscriber_count,
            "closing": len(self._closing),
            "published": self.stats.published,
            "connects": self.stats.connects,
            "upstream_losses": self.stats.upstream_losses,
            "evictions": self.stats.evictions,
            "policy": self.policy.value,
            "default_capacity": self.default_capacity,
            "started_at": (
                self.stats.started_at.isoformat()
                if self.stats.started_at
                else None
            ),
        }

    # ─── Fan-out loop ────────────────────────────────────

    async def _run(self) -> None:
        backoff = Backoff(self.backoff_initial, self.backoff_max)

        while self._running:
            try:
                cursor = await self.store.changes()
            except Exception as e:
                delay = backoff.next_delay()
                logger.warning(
                    "bus.upstream_unavailable",
                    error=str(e),
                    retry_in=round(delay, 3),
                )
                await asyncio.sleep(delay)
                continue

            reason = await self._consume(cursor, backoff)
            if not self._running:
                break

            self._upstream_lost(reason)
            delay = backoff.next_delay()
            logger.info("bus.reconnect_scheduled", retry_in=round(delay, 3))
            await asyncio.sleep(delay)

    async def _consume(self, cursor: ChangeCursor, backoff: Backoff) -> str:
        """Pump one cursor until it is lost. Returns why it stopped."""
        self._connected.set()
        self.stats.connects += 1
        logger.info("bus.upstream_connected", connects=self.stats.connects)
        try:
            async for event in cursor:
                if event.is_invalidate:
                    return "invalidated"
                backoff.reset()
                self._fan_out(event)
            return "ended"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("bus.upstream_failed")
            return f"error: {e}"
        finally:
            self._connected.clear()
            await cursor.aclose()

    def _fan_out(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = tuple(self._subscriptions.values())

        self.stats.published += 1
        for subscription in targets:
            try:
                subscription.offer(event)
            except SlowConsumerError:
                self._evict(subscription)
            except Exception:
                logger.exception("bus.enqueue_failed", subscription_id=subscription.id)

    def _evict(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)
        subscription.close(CloseReason.SLOW_CONSUMER)
        self.stats.evictions += 1
        logger.warning(
            "bus.subscriber_evicted",
            subscription_id=subscription.id,
            capacity=subscription.capacity,
            dropped=subscription.dropped,
        )

    def _upstream_lost(self, reason: str) -> None:
        """Send a terminal INVALIDATE to every subscription and close them."""
        with self._lock:
            targets = list(self._subscriptions.values())
            self._subscriptions.clear()

        self.stats.upstream_losses += 1
        logger.warning("bus.upstream_lost", reason=reason, subscribers=len(targets))

        loop = asyncio.get_running_loop()
        for subscription in targets:
            if subscription.terminate(CloseReason.UPSTREAM_LOST, ChangeEvent.invalidate()):
                handle = loop.call_later(self.closing_grace, self._expire, subscription)
                self._closing[subscription.id] = (subscription, handle)

    def _expire(self, subscription: Subscription) -> None:
        """Force-close a subscription whose consumer never drained it."""
        self._closing.pop(subscription.id, None)
        if subscription.close(CloseReason.UPSTREAM_LOST):
            logger.info("bus.subscription_expired", subscription_id=subscription.id)

    def _forget_closing(self, subscription: Subscription) -> None:
        """Drop the grace timer of a subscription that reached CLOSED."""
        entry = self._closing.pop(subscription.id, None)
        if entry is not None:
            entry[1].cancel()
