import asyncio

import pytest

from socialgraph.utils.locks import AsyncRWLock, PairSerializer


@pytest.mark.unit
class TestAsyncRWLock:
    @pytest.mark.asyncio
    async def test_readers_share_the_lock(self):
        # Arrange
        lock = AsyncRWLock()
        inside = 0
        peak = 0

        async def reader():
            nonlocal inside, peak
            async with lock.read():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        # Act
        await asyncio.gather(reader(), reader(), reader())

        # Assert
        assert peak == 3

    @pytest.mark.asyncio
    async def test_writer_excludes_readers(self):
        # Arrange
        lock = AsyncRWLock()
        order = []

        async def writer():
            async with lock.write():
                order.append("write-start")
                await asyncio.sleep(0.01)
                order.append("write-end")

        async def reader():
            await asyncio.sleep(0)
            async with lock.read():
                order.append("read")

        # Act
        await asyncio.gather(writer(), reader())

        # Assert
        assert order == ["write-start", "write-end", "read"]


@pytest.mark.unit
class TestPairSerializer:
    @pytest.mark.asyncio
    async def test_identical_calls_share_one_execution(self):
        # Arrange
        serializer = PairSerializer()
        calls = 0

        async def follow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return "following"

        # Act
        results = await asyncio.gather(
            serializer.run("alice", "bob", ("follow", "alice", "bob"), follow),
            serializer.run("alice", "bob", ("follow", "alice", "bob"), follow),
        )

        # Assert
        assert results == ["following", "following"]
        assert calls == 1
        assert not serializer.in_flight(("follow", "alice", "bob"))

    @pytest.mark.asyncio
    async def test_different_calls_on_same_pair_do_not_overlap(self):
        # Arrange
        serializer = PairSerializer()
        active = 0
        peak = 0

        async def mutation():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        # Act: the pair is unordered, so bob/alice shares alice/bob's lock
        await asyncio.gather(
            serializer.run("alice", "bob", "follow", mutation),
            serializer.run("bob", "alice", "block", mutation),
        )

        # Assert
        assert peak == 1

    @pytest.mark.asyncio
    async def test_unrelated_pairs_run_concurrently(self):
        # Arrange
        serializer = PairSerializer()
        active = 0
        peak = 0

        async def mutation():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        # Act
        await asyncio.gather(
            serializer.run("alice", "bob", "one", mutation),
            serializer.run("carol", "dave", "two", mutation),
        )

        # Assert
        assert peak == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_mutation(self):
        # Arrange
        serializer = PairSerializer()
        finished = asyncio.Event()

        async def mutation():
            await asyncio.sleep(0.01)
            finished.set()

        caller = asyncio.create_task(serializer.run("alice", "bob", "follow", mutation))
        await asyncio.sleep(0)

        # Act
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.wait_for(finished.wait(), timeout=1)

        # Assert
        assert finished.is_set()
