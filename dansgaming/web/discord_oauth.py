"""Discord OAuth2 authorization-code flow for staff sign-in."""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from dansgaming.shared.config import Settings
from dansgaming.web.discord import DISCORD_API_BASE, DiscordAPIError, DiscordConfigurationError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://discord.com/api/oauth2/authorize"


class DiscordOAuth:
    """Builds authorization URLs and exchanges codes for Discord users."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: str = "identify guilds.members.read",
        *,
        api_base: str = DISCORD_API_BASE,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self._client = httpx.AsyncClient(base_url=api_base, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DiscordOAuth":
        return cls(
            settings.discord_client_id,
            settings.discord_client_secret,
            settings.discord_redirect_uri,
            settings.discord_oauth_scopes,
            api_base=settings.discord_api_base,
            timeout=settings.discord_timeout,
        )

    def missing_config(self) -> List[str]:
        missing = []
        if not self.client_id:
            missing.append("DISCORD_CLIENT_ID")
        if not self.redirect_uri:
            missing.append("DISCORD_REDIRECT_URI")
        return missing

    def authorization_url(self, state: Optional[str] = None) -> tuple[str, str]:
        """Return the Discord consent URL and the state embedded in it.

        Raises:
            DiscordConfigurationError: If the client id or redirect URI is unset
        """
        missing = self.missing_config()
        if missing:
            raise DiscordConfigurationError(missing)

        state = state or secrets.token_urlsafe(16)
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scopes,
            "state": state,
        })
        return f"{AUTHORIZE_URL}?{query}", state

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for a user access token."""
        response = await self._client.post(
            "/oauth2/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            },
        )
        if not response.is_success:
            raise DiscordAPIError(response.status_code, response.text)
        return response.json()["access_token"]

    async def fetch_current_user(self, access_token: str) -> Dict[str, Any]:
        """The ``/users/@me`` object for the token's owner."""
        response = await self._client.get(
            "/users/@me", headers={"Authorization": f"Bearer {access_token}"}
        )
        if not response.is_success:
            raise DiscordAPIError(response.status_code, response.text)
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
