from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from jose import jwt

from socialgraph.config import Settings
from socialgraph.services.auth import AuthService, InvalidTokenError, TokenExpiredError


def make_token(claims: dict, secret: str = "test-secret", **headers) -> str:
    return jwt.encode(claims, secret, algorithm="HS256", headers=headers or None)


@pytest.fixture
def auth_service(settings: Settings) -> AuthService:
    return AuthService(settings)


@pytest.fixture
def auth0_service() -> AuthService:
    return AuthService(Settings(auth0_domain="tenant.auth0.com", auth0_audience="social-api"))


@pytest.fixture
def mock_httpx_client(mocker):
    client = AsyncMock()
    client_cls = mocker.patch("socialgraph.services.auth.httpx.AsyncClient")
    client_cls.return_value.__aenter__.return_value = client
    return client


@pytest.mark.unit
class TestAuthService:
    @pytest.mark.asyncio
    async def test_get_current_user_id_from_subject(self, auth_service: AuthService):
        # Arrange
        token = make_token({"sub": "alice"})

        # Act
        result = await auth_service.get_current_user_id(token)

        # Assert
        assert result == "alice"

    @pytest.mark.asyncio
    async def test_user_id_claim_wins_over_subject(self, auth_service: AuthService):
        # Arrange
        token = make_token({"sub": "auth0|123", "user_id": "alice"})

        # Act
        result = await auth_service.get_current_user_id(token)

        # Assert
        assert result == "alice"

    @pytest.mark.asyncio
    async def test_expired_token(self, auth_service: AuthService):
        # Arrange
        token = make_token(
            {"sub": "alice", "exp": datetime.now(UTC) - timedelta(minutes=5)}
        )

        # Act & Assert
        with pytest.raises(TokenExpiredError):
            await auth_service.get_current_user_id(token)

    @pytest.mark.asyncio
    async def test_token_signed_with_other_secret(self, auth_service: AuthService):
        # Arrange
        token = make_token({"sub": "alice"}, secret="not-the-secret")

        # Act & Assert
        with pytest.raises(InvalidTokenError, match="Invalid token"):
            await auth_service.get_current_user_id(token)

    @pytest.mark.asyncio
    async def test_garbage_token(self, auth_service: AuthService):
        with pytest.raises(InvalidTokenError):
            await auth_service.get_current_user_id("not.a.jwt")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("claims", [{}, {"sub": "bob smith"}, {"sub": "a:b"}])
    async def test_token_without_usable_subject(self, auth_service: AuthService, claims: dict):
        with pytest.raises(InvalidTokenError, match="does not identify a user"):
            await auth_service.get_current_user_id(make_token(claims))


@pytest.mark.unit
class TestAuth0Keys:
    @pytest.mark.asyncio
    async def test_unknown_key_id(self, auth0_service: AuthService, mock_httpx_client):
        # Arrange
        response = MagicMock()
        response.json.return_value = {
            "keys": [{"kid": "known", "kty": "RSA", "use": "sig", "n": "abc", "e": "AQAB"}]
        }
        mock_httpx_client.get.return_value = response
        token = make_token({"sub": "alice"}, kid="unknown")

        # Act & Assert
        with pytest.raises(InvalidTokenError, match="Unable to find appropriate key"):
            await auth0_service.validate_token(token)
        mock_httpx_client.get.assert_awaited_once_with(
            "https://tenant.auth0.com/.well-known/jwks.json"
        )

    @pytest.mark.asyncio
    async def test_signing_keys_are_fetched_once(
        self, auth0_service: AuthService, mock_httpx_client
    ):
        # Arrange
        response = MagicMock()
        response.json.return_value = {"keys": []}
        mock_httpx_client.get.return_value = response
        token = make_token({"sub": "alice"}, kid="unknown")

        # Act
        for _ in range(2):
            with pytest.raises(InvalidTokenError):
                await auth0_service.validate_token(token)

        # Assert
        assert mock_httpx_client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_unreachable_key_endpoint(self, auth0_service: AuthService, mock_httpx_client):
        # Arrange
        mock_httpx_client.get.side_effect = httpx.ConnectError("connection refused")

        # Act & Assert
        with pytest.raises(InvalidTokenError, match="Failed to fetch signing keys"):
            await auth0_service.validate_token(make_token({"sub": "alice"}, kid="known"))
