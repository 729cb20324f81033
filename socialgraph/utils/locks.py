import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")


class AsyncRWLock:
    """Readers/writer lock for coroutines.

    Any number of readers may hold the lock at once; a writer holds it alone.
    Waiting writers block new readers so writes are not starved. The lock is
    not reentrant.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and not self._waiting_writers
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and not self._readers
                )
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class ShardedRWLock:
    """A fixed set of readers/writer locks selected by key.

    Keys that land on different shards never wait on each other, so updates
    for unrelated users proceed independently.
    """

    def __init__(self, shards: int = 32) -> None:
        self._shards = [AsyncRWLock() for _ in range(shards)]

    def for_key(self, key: Hashable) -> AsyncRWLock:
        return self._shards[hash(key) % len(self._shards)]


@dataclass
class _PairLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class PairSerializer:
    """Serializes mutations per unordered user pair.

    Identical calls (same ``call_key``) that overlap share one task and one
    result. Different calls touching the same pair run one after another.
    The running task is shielded so a cancelled caller never leaves a
    mutation half applied.
    """

    def __init__(self) -> None:
        self._locks: dict[frozenset[str], _PairLock] = {}
        self._in_flight: dict[Hashable, asyncio.Future[Any]] = {}

    @staticmethod
    def pair_key(a: str, b: str) -> frozenset[str]:
        return frozenset((a, b))

    def in_flight(self, call_key: Hashable) -> bool:
        return call_key in self._in_flight

    async def run(
        self,
        a: str,
        b: str,
        call_key: Hashable,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        existing = self._in_flight.get(call_key)
        if existing is not None:
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(self._serialized(self.pair_key(a, b), factory))
        self._in_flight[call_key] = task

        def _forget(done: asyncio.Future[Any]) -> None:
            if self._in_flight.get(call_key) is done:
                del self._in_flight[call_key]

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _serialized(
        self, pair: frozenset[str], factory: Callable[[], Awaitable[T]]
    ) -> T:
        entry = self._locks.setdefault(pair, _PairLock())
        entry.holders += 1
        try:
            async with entry.lock:
                return await factory()
        finally:
            entry.holders -= 1
            if not entry.holders:
                self._locks.pop(pair, None)
