import logging
from typing import Any, cast

import httpx
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError

from socialgraph.config import Settings
from socialgraph.errors import AuthenticationRequired
from socialgraph.models.user import is_valid_user_id

logger = logging.getLogger(__name__)


class InvalidTokenError(AuthenticationRequired):
    """Exception raised when a token is invalid."""

    pass


class TokenExpiredError(AuthenticationRequired):
    """Exception raised when a token has expired."""

    pass


class AuthService:
    """Validates bearer tokens and resolves the acting user.

    With a shared ``jwt_secret`` configured, tokens are HS256 JWTs signed
    with it. Otherwise tokens are Auth0 RS256 JWTs verified against the
    tenant's JWKS, which is fetched once and kept.

    Attributes:
        domain: Auth0 domain
        audience: Expected token audience, if any
        algorithms: List of accepted JWT algorithms
    """

    def __init__(self, settings: Settings) -> None:
        self.domain = settings.auth0_domain
        self.audience = settings.auth0_audience
        self._secret = settings.jwt_secret
        self.algorithms: list[str] = ["HS256"] if self._secret else ["RS256"]
        self._timeout = settings.network_timeout
        self._jwks: dict[str, Any] | None = None

    async def _get_jwks(self) -> dict[str, Any]:
        if self._jwks is None:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(f"https://{self.domain}/.well-known/jwks.json")
                    response.raise_for_status()
                    self._jwks = response.json()
            except httpx.HTTPError as e:
                raise InvalidTokenError(f"Failed to fetch signing keys: {str(e)}")
        return self._jwks

    async def _signing_key(self, token: str) -> dict[str, Any] | str:
        if self._secret:
            return self._secret

        jwks = await self._get_jwks()
        unverified_header = jwt.get_unverified_header(token)
        for key in jwks["keys"]:
            if key["kid"] == unverified_header.get("kid"):
                return {
                    "kty": key["kty"],
                    "kid": key["kid"],
                    "use": key["use"],
                    "n": key["n"],
                    "e": key["e"],
                }
        raise InvalidTokenError("Unable to find appropriate key")

    async def validate_token(self, token: str) -> dict[str, Any]:
        """Validate a bearer token.

        Args:
            token: The JWT token to validate

        Returns:
            The decoded token payload

        Raises:
            InvalidTokenError: If token is invalid
            TokenExpiredError: If token has expired
        """
        try:
            key = await self._signing_key(token)
            payload = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                audience=self.audience or None,
                issuer=f"https://{self.domain}/" if self.domain and not self._secret else None,
                options={"verify_aud": bool(self.audience)},
            )
            return cast(dict[str, Any], payload)
        except ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except JWTClaimsError as e:
            raise InvalidTokenError(f"Invalid claims: {str(e)}")
        except JWTError as e:
            raise InvalidTokenError(f"Invalid token: {str(e)}")

    async def get_current_user_id(self, token: str) -> str:
        """Resolve the user a token was issued to.

        The ``user_id`` claim is used when present, the subject otherwise.

        Raises:
            InvalidTokenError: If token is invalid or names no valid user
            TokenExpiredError: If token has expired
        """
        payload = await self.validate_token(token)
        user_id = payload.get("user_id") or payload.get("sub")
        if not is_valid_user_id(user_id):
            logger.info("Rejected token with unusable subject %r", user_id)
            raise InvalidTokenError("Token does not identify a user")
        return cast(str, user_id)
