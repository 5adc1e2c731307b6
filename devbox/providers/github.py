"""GitHub implementation of the source-control provider."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, override

import httpx

from ..errors import AuthenticationError, ProviderError, TransportError
from .base import SourceControlProvider

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"

TokenLookup = Callable[[str], "str | None | Awaitable[str | None]"]


class GitHubProvider(SourceControlProvider):
    """Registers SSH keys on behalf of console users.

    ``token_lookup`` maps a console user id to that user's GitHub OAuth
    token; it may be sync or async and returns None for unlinked users.
    """

    _token_lookup: TokenLookup
    _client: httpx.AsyncClient

    def __init__(
        self,
        token_lookup: TokenLookup,
        *,
        base_url: str = GITHUB_API_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_lookup = token_lookup
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(15.0, connect=5.0),
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    @override
    async def register_public_key(self, user_id: str, title: str, key: str) -> bool:
        token = await self._token_for(user_id)
        if token is None:
            logger.warning("No GitHub access token found for user %s", user_id)
            return False
        response = await self._request(
            "POST",
            "/user/keys",
            token,
            json={"title": title, "key": key.strip()},
        )
        key_id = response.json().get("id")
        logger.info("Added SSH key %s to GitHub for user %s: %s", key_id, user_id, title)
        return True

    @override
    async def remove_public_key(self, user_id: str, key_id: int) -> bool:
        token = await self._token_for(user_id)
        if token is None:
            return False
        await self._request("DELETE", f"/user/keys/{key_id}", token)
        logger.info("Removed SSH key %s from GitHub for user %s", key_id, user_id)
        return True

    @override
    async def list_public_keys(self, user_id: str) -> Sequence[dict[str, object]]:
        token = await self._token_for(user_id)
        if token is None:
            return []
        response = await self._request("GET", "/user/keys", token)
        return [
            {"id": item.get("id"), "key": item.get("key"), "title": item.get("title")}
            for item in response.json()
        ]

    @override
    async def aclose(self) -> None:
        await self._client.aclose()

    async def _token_for(self, user_id: str) -> str | None:
        token = self._token_lookup(user_id)
        if inspect.isawaitable(token):
            token = await token
        return token or None

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise TransportError(f"GitHub API unreachable: {exc}") from exc
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"GitHub rejected credentials ({response.status_code})",
                status_code=response.status_code,
            )
        if response.is_error:
            raise ProviderError(
                f"GitHub API error {response.status_code}: {response.text.strip()}",
                status_code=response.status_code,
            )
        return response
