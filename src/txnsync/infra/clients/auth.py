"""Bearer-token providers consumed by the request executor."""

from __future__ import annotations

from collections.abc import Callable
import json
import time
from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from txnsync.core.errors import UnauthorizedError

# Tokens are treated as expired this many seconds before the server says so.
EXPIRY_MARGIN_SECONDS = 300


class CredentialProvider(Protocol):
    async def get_token(self) -> str: ...

    async def refresh_token(self) -> str: ...


class StaticCredentialProvider:
    """Serves a fixed token. Refreshing returns the same token."""

    def __init__(self, token: str) -> None:
        self._token = token
        self.refresh_count = 0

    async def get_token(self) -> str:
        return self._token

    async def refresh_token(self) -> str:
        self.refresh_count += 1
        return self._token


class TokenResponse(BaseModel):
    access_token: str
    token_type: str | None = None
    expires_in: int = 3600
    scope: str | None = None


class ClientCredentialsProvider:
    """OAuth2 client-credentials grant with an in-memory token cache."""

    def __init__(
        self,
        *,
        auth_url: str,
        client_id: str,
        client_secret: str,
        scope: str = "api",
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._auth_url = auth_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0

    async def get_token(self) -> str:
        if self._token is not None and self._expires_at > self._clock():
            return self._token
        return await self._fetch_new_token()

    async def refresh_token(self) -> str:
        self._token = None
        self._expires_at = 0.0
        return await self.get_token()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _fetch_new_token(self, *, with_scope: bool = False) -> str:
        form: dict[str, Any] = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if with_scope:
            form["scope"] = self._scope

        logger.bind(with_scope=with_scope).debug(
            "Requesting token from {}", self._auth_url
        )
        try:
            response = await self._http.post(self._auth_url, data=form)
        except httpx.HTTPError as e:
            raise UnauthorizedError(f"Token request failed: {e}") from e

        if response.status_code == 400 and "invalid_scope" in response.text:
            if with_scope:
                raise UnauthorizedError(f"Token request rejected: {response.text}")
            # Some servers refuse an implicit scope; ask for ours explicitly.
            return await self._fetch_new_token(with_scope=True)

        if response.is_error:
            raise UnauthorizedError(
                f"Failed to get token: {response.status_code} {response.text}"
            )

        try:
            token = TokenResponse.model_validate(json.loads(response.text))
        except (json.JSONDecodeError, ValidationError) as e:
            raise UnauthorizedError(f"Failed to parse token response: {e}") from e

        self._token = token.access_token
        self._expires_at = self._clock() + token.expires_in - EXPIRY_MARGIN_SECONDS
        logger.bind(expires_in=token.expires_in).info(
            "Token obtained, expires in {} seconds", token.expires_in
        )
        return token.access_token
