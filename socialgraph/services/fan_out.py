import asyncio
import itertools
import logging
from collections import OrderedDict
from collections.abc import Hashable
from typing import Generic, Protocol, Self, TypeVar

logger = logging.getLogger(__name__)


class FanOutEvent(Protocol):
    @property
    def key(self) -> Hashable: ...

    @property
    def sequence(self) -> int: ...

    def model_copy(self, *, update: dict | None = None, deep: bool = False) -> Self: ...


E = TypeVar("E", bound=FanOutEvent)


class Subscription(Generic[E]):
    """Bounded, key-coalescing event channel for one subscriber.

    While an event for a key is still undelivered, a newer event for the same
    key replaces it and moves to the back of the queue, so delivery order
    always follows publish order. Events older than one already delivered
    for the same key are dropped, which makes redelivery harmless.

    The last delivered sequence is remembered for at most
    ``DELIVERED_KEYS_PER_SLOT * capacity`` keys. Forgotten keys raise a
    low-water mark, and any event at or below it is dropped as a redelivery.
    """

    DELIVERED_KEYS_PER_SLOT = 4

    def __init__(self, capacity: int, offer_timeout: float) -> None:
        self.capacity = capacity
        self._offer_timeout = offer_timeout
        self._pending: OrderedDict[Hashable, E] = OrderedDict()
        self._delivered: OrderedDict[Hashable, int] = OrderedDict()
        self._low_water = 0
        self._cond = asyncio.Condition()
        self.closed = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def delivered_keys(self) -> int:
        return len(self._delivered)

    def _is_stale(self, event: E) -> bool:
        seen = max(self._low_water, self._delivered.get(event.key, 0))
        pending = self._pending.get(event.key)
        if pending is not None:
            seen = max(seen, pending.sequence - 1)
        return event.sequence <= seen

    async def offer(self, event: E) -> bool:
        """Queue ``event``; returns False if the subscriber stayed full too long."""
        async with self._cond:
            if self.closed or self._is_stale(event):
                return True
            if event.key in self._pending:
                self._pending[event.key] = event
                self._pending.move_to_end(event.key)
            else:
                try:
                    async with asyncio.timeout(self._offer_timeout):
                        await self._cond.wait_for(
                            lambda: len(self._pending) < self.capacity or self.closed
                        )
                except TimeoutError:
                    return False
                if self.closed:
                    return True
                self._pending[event.key] = event
            self._cond.notify_all()
            return True

    async def get(self) -> E:
        """Wait for the next event.

        Raises:
            StopAsyncIteration: If the subscription is closed and drained
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._pending or self.closed)
            if not self._pending:
                raise StopAsyncIteration
            event = self._take()
            self._cond.notify_all()
            return event

    async def drain(self) -> list[E]:
        """Take every queued event without waiting."""
        async with self._cond:
            events = []
            while self._pending:
                events.append(self._take())
            self._cond.notify_all()
            return events

    def _take(self) -> E:
        key, event = self._pending.popitem(last=False)
        self._delivered[key] = event.sequence
        self._delivered.move_to_end(key)
        while len(self._delivered) > self.DELIVERED_KEYS_PER_SLOT * self.capacity:
            _, sequence = self._delivered.popitem(last=False)
            self._low_water = max(self._low_water, sequence)
        return event

    async def close(self) -> None:
        async with self._cond:
            self.closed = True
            self._cond.notify_all()

    def __aiter__(self) -> "Subscription[E]":
        return self

    async def __anext__(self) -> E:
        return await self.get()


class SyncFanOut(Generic[E]):
    """Broadcasts events to every subscriber with per-key causal ordering.

    Publishing is serialized and stamps each event with a growing sequence
    number (events that already carry one keep it, so a republish is
    deduplicated downstream). There is no ordering promise across keys
    beyond publish order, and delivery is at-least-once.
    """

    def __init__(self, capacity: int = 1_024, offer_timeout: float = 5.0) -> None:
        self.capacity = capacity
        self.offer_timeout = offer_timeout
        self._subscriptions: list[Subscription[E]] = []
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, capacity: int | None = None) -> Subscription[E]:
        subscription: Subscription[E] = Subscription(
            capacity or self.capacity, self.offer_timeout
        )
        self._subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription[E]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        await subscription.close()

    async def publish(self, event: E) -> E:
        async with self._lock:
            if not event.sequence:
                event = event.model_copy(update={"sequence": next(self._sequence)})
            for subscription in list(self._subscriptions):
                if not await subscription.offer(event):
                    logger.warning(
                        "Dropping subscriber that stayed full for %.1fs", self.offer_timeout
                    )
                    await self.unsubscribe(subscription)
        return event

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await self.unsubscribe(subscription)
