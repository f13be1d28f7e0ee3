"""Discord REST API client for guild, member and role data.

All requests are authenticated with the bot token and share one retry
policy: an HTTP 429 is retried after the server-specified ``retry-after``
delay, up to ``max_retries`` times, before ``DiscordRateLimitError`` is
raised with the last delay attached. Other non-2xx responses raise
``DiscordAPIError`` immediately; transport errors from httpx propagate
unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from dansgaming.shared.config import Settings

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_CDN = "https://cdn.discordapp.com"
DISCORD_EPOCH_MS = 1420070400000
MEMBERS_PAGE_SIZE = 1000
DEFAULT_RETRY_AFTER = 1.0


class DiscordAPIError(Exception):
    """Non-2xx response from the Discord API."""

    def __init__(self, status: int, body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = body
        super().__init__(message or f"Discord API error {status}: {body[:200]}")


class DiscordPermissionError(DiscordAPIError):
    """The bot lacks a permission or intent needed for the request (403)."""


class DiscordNotFoundError(DiscordAPIError):
    """Guild, member or role does not exist (404)."""


class DiscordRateLimitError(DiscordAPIError):
    """Rate limit still in force after the retry ceiling was reached."""

    def __init__(self, retry_after: float, body: str = ""):
        self.retry_after = retry_after
        super().__init__(
            429,
            body,
            f"Discord API rate limit exceeded; retry after {retry_after} seconds",
        )


class DiscordConfigurationError(Exception):
    """Required Discord settings are missing."""

    def __init__(self, missing: Optional[List[str]] = None):
        self.missing = missing or []
        detail = f": {', '.join(self.missing)}" if self.missing else ""
        super().__init__(f"Discord configuration missing{detail}")


def avatar_url(user_id: str, avatar_hash: Optional[str]) -> Optional[str]:
    if not avatar_hash:
        return None
    return f"{DISCORD_CDN}/avatars/{user_id}/{avatar_hash}.png"


def snowflake_time(snowflake: str) -> datetime:
    """Creation time encoded in a Discord snowflake."""
    milliseconds = (int(snowflake) >> 22) + DISCORD_EPOCH_MS
    return datetime.fromtimestamp(milliseconds / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class GuildMember:
    """A guild member as returned by Discord. Never persisted."""

    id: str
    username: str
    nick: Optional[str] = None
    avatar: Optional[str] = None
    roles: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GuildMember":
        user = data.get("user") or {}
        return cls(
            id=str(user.get("id", "")),
            username=user.get("username", ""),
            nick=data.get("nick"),
            avatar=user.get("avatar"),
            roles=tuple(str(role_id) for role_id in data.get("roles") or ()),
        )

    @property
    def display_name(self) -> str:
        return self.nick or self.username

    @property
    def avatar_url(self) -> Optional[str]:
        return avatar_url(self.id, self.avatar)


def _retry_after(response: httpx.Response) -> float:
    header = response.headers.get("retry-after")
    if header is not None:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        body = response.json()
        if isinstance(body, dict) and "retry_after" in body:
            return float(body["retry_after"])
    except ValueError:
        pass
    return DEFAULT_RETRY_AFTER


def _error_for(response: httpx.Response) -> DiscordAPIError:
    status = response.status_code
    body = response.text
    if status == 403:
        return DiscordPermissionError(status, body)
    if status == 404:
        return DiscordNotFoundError(status, body)
    return DiscordAPIError(status, body)


class DiscordClient:
    """Bot-authenticated client for the Discord REST API.

    Args:
        bot_token: Discord bot token
        base_url: API base URL
        timeout: Per-request timeout in seconds
        max_retries: Retries allowed after an HTTP 429
        page_delay: Pause between member pages, in seconds
        sleep: Coroutine used for waits; tests inject a fake
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        bot_token: str,
        *,
        base_url: str = DISCORD_API_BASE,
        timeout: float = 10.0,
        max_retries: int = 3,
        page_delay: float = 0.1,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_retries = max_retries
        self.page_delay = page_delay
        self._sleep = sleep or asyncio.sleep
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bot {bot_token}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "DiscordClient":
        return cls(
            settings.discord_bot_token,
            base_url=settings.discord_api_base,
            timeout=settings.discord_timeout,
            max_retries=settings.discord_max_retries,
            page_delay=settings.discord_page_delay,
        )

    async def __aenter__(self) -> "DiscordClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        retries = 0
        while True:
            response = await self._client.request(method, path, params=params, headers=headers)

            if response.status_code == 429:
                retry_after = _retry_after(response)
                if retries >= self.max_retries:
                    logger.error(
                        f"Discord rate limit on {method} {path} persisted after {retries} retries"
                    )
                    raise DiscordRateLimitError(retry_after, response.text)
                retries += 1
                logger.warning(
                    f"Rate limited on {method} {path}. Waiting {retry_after}s before retry "
                    f"{retries}/{self.max_retries}"
                )
                await self._sleep(retry_after)
                continue

            if response.is_success:
                return response

            raise _error_for(response)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("GET", path, params=params)
        return response.json()

    async def fetch_guild_members(self, guild_id: str) -> List[GuildMember]:
        """Fetch every member of a guild.

        Pages of up to 1000 members are requested with an ``after`` cursor
        set to the last member id seen, until a short page is returned.
        """
        members: List[GuildMember] = []
        after: Optional[str] = None
        pages = 0

        while True:
            params: Dict[str, Any] = {"limit": MEMBERS_PAGE_SIZE}
            if after is not None:
                params["after"] = after

            batch = await self._get_json(f"/guilds/{guild_id}/members", params)
            pages += 1
            members.extend(GuildMember.from_payload(item) for item in batch)
            logger.debug(f"Fetched {len(batch)} members, total so far: {len(members)}")

            if len(batch) < MEMBERS_PAGE_SIZE:
                break

            after = str(batch[-1]["user"]["id"])
            await self._sleep(self.page_delay)

        logger.info(f"Fetched {len(members)} guild members in {pages} page(s)")
        return members

    async def fetch_guild_member(self, guild_id: str, user_id: str) -> GuildMember:
        data = await self._get_json(f"/guilds/{guild_id}/members/{user_id}")
        return GuildMember.from_payload(data)

    async def fetch_guild_roles(self, guild_id: str) -> List[Dict[str, Any]]:
        """Role objects of the guild, including @everyone and managed roles."""
        return await self._get_json(f"/guilds/{guild_id}/roles")

    async def fetch_guild_info(self, guild_id: str) -> Dict[str, Any]:
        return await self._get_json(f"/guilds/{guild_id}", {"with_counts": "true"})

    async def fetch_guild_channels(self, guild_id: str) -> List[Dict[str, Any]]:
        return await self._get_json(f"/guilds/{guild_id}/channels")

    async def fetch_audit_logs(self, guild_id: str, limit: int = 50) -> Dict[str, Any]:
        return await self._get_json(f"/guilds/{guild_id}/audit-logs", {"limit": limit})

    async def grant_role(
        self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None
    ) -> None:
        """Add a role to a member. Granting a held role is a no-op on Discord's side."""
        headers = {"X-Audit-Log-Reason": reason} if reason else None
        await self._request(
            "PUT", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", headers=headers
        )
        logger.info(f"Granted role {role_id} to user {user_id}")

    async def revoke_role(
        self, guild_id: str, user_id: str, role_id: str, reason: Optional[str] = None
    ) -> None:
        """Remove a role from a member. Revoking a role not held is a no-op on Discord's side."""
        headers = {"X-Audit-Log-Reason": reason} if reason else None
        await self._request(
            "DELETE", f"/guilds/{guild_id}/members/{user_id}/roles/{role_id}", headers=headers
        )
        logger.info(f"Revoked role {role_id} from user {user_id}")
