import asyncio
from unittest.mock import AsyncMock

import pytest

from socialgraph.errors import NetworkError, NotFound
from socialgraph.utils.remote import call_with_deadline, fetch_with_retry


@pytest.mark.unit
class TestRemoteCalls:
    @pytest.mark.asyncio
    async def test_deadline_exceeded_is_network_error(self):
        # Arrange
        async def slow():
            await asyncio.sleep(1)

        # Act & Assert
        with pytest.raises(NetworkError, match="deadline"):
            await call_with_deadline(slow, timeout=0.01)

    @pytest.mark.asyncio
    async def test_dropped_connection_is_network_error(self):
        with pytest.raises(NetworkError) as exc_info:
            await call_with_deadline(
                AsyncMock(side_effect=ConnectionResetError("reset")), timeout=1
            )

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self):
        with pytest.raises(NotFound):
            await call_with_deadline(AsyncMock(side_effect=NotFound("gone")), timeout=1)

    @pytest.mark.asyncio
    async def test_fetch_retries_until_success(self):
        # Arrange
        factory = AsyncMock(side_effect=[NetworkError("timeout"), "profile"])

        # Act
        result = await fetch_with_retry(
            factory, timeout=1, attempts=3, backoff=0, description="fetch profile"
        )

        # Assert
        assert result == "profile"
        assert factory.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_gives_up_after_attempts(self):
        # Arrange
        factory = AsyncMock(side_effect=NetworkError("timeout"))

        # Act & Assert
        with pytest.raises(NetworkError):
            await fetch_with_retry(
                factory, timeout=1, attempts=2, backoff=0, description="fetch profile"
            )
        assert factory.await_count == 2

    @pytest.mark.asyncio
    async def test_fetch_does_not_retry_not_found(self):
        # Arrange
        factory = AsyncMock(side_effect=NotFound("gone"))

        # Act & Assert
        with pytest.raises(NotFound):
            await fetch_with_retry(
                factory, timeout=1, attempts=3, backoff=0, description="fetch profile"
            )
        assert factory.await_count == 1
