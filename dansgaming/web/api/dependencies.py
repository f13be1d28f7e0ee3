"""FastAPI dependencies for authentication and shared services.

Authentication runs in two stages. ``require_staff_token`` checks the
signed token and its coarse ``role`` claim without touching Discord.
``get_staff_identity`` then loads the account and recomputes the caller's
permission level from their live Discord roles.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from dansgaming.shared.config import Settings, get_settings
from dansgaming.shared.database import get_db_session
from dansgaming.web.crud import UserOperations
from dansgaming.web.discord import DiscordClient
from dansgaming.web.discord_oauth import DiscordOAuth
from dansgaming.web.member_cache import GuildMemberCache
from dansgaming.web.roles import RoleMapping
from dansgaming.web.roster import KeyedLocks, StaffRoster, fallback_staff_from_settings
from dansgaming.web.security import (
    StaffIdentity,
    TokenError,
    TokenPayload,
    decode_access_token,
    resolve_permission_level,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_role_mapping(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> RoleMapping:
    mapping = getattr(request.app.state, "role_mapping", None)
    if mapping is None:
        mapping = RoleMapping.from_settings(settings)
        request.app.state.role_mapping = mapping
    return mapping


def get_discord_client(request: Request) -> Optional[DiscordClient]:
    """The shared bot client, or None when no bot token is configured."""
    return getattr(request.app.state, "discord_client", None)


def get_member_cache(request: Request) -> Optional[GuildMemberCache]:
    return getattr(request.app.state, "member_cache", None)


def get_discord_oauth(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> DiscordOAuth:
    oauth = getattr(request.app.state, "discord_oauth", None)
    if oauth is None:
        oauth = DiscordOAuth.from_settings(settings)
        request.app.state.discord_oauth = oauth
    return oauth


def get_roster_locks(request: Request) -> KeyedLocks:
    locks = getattr(request.app.state, "roster_locks", None)
    if locks is None:
        locks = KeyedLocks()
        request.app.state.roster_locks = locks
    return locks


async def get_staff_roster(
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    mapping: RoleMapping = Depends(get_role_mapping),
    client: Optional[DiscordClient] = Depends(get_discord_client),
    cache: Optional[GuildMemberCache] = Depends(get_member_cache),
    locks: KeyedLocks = Depends(get_roster_locks),
) -> StaffRoster:
    """Per-request roster bound to the request's database session."""
    return StaffRoster(
        session,
        client=client,
        cache=cache,
        mapping=mapping,
        guild_id=settings.discord_guild_id,
        locks=locks,
        fallback=fallback_staff_from_settings(settings),
    )


async def get_token_payload(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> TokenPayload:
    """Decode the bearer token.

    Raises:
        HTTPException: 401 when no token is sent, 403 when it is invalid or expired
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
        )

    try:
        return decode_access_token(credentials.credentials, settings)
    except TokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or expired token",
        )


async def require_staff_token(
    payload: TokenPayload = Depends(get_token_payload),
) -> TokenPayload:
    if payload.role != "staff":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return payload


async def get_staff_identity(
    payload: TokenPayload = Depends(require_staff_token),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    mapping: RoleMapping = Depends(get_role_mapping),
    client: Optional[DiscordClient] = Depends(get_discord_client),
) -> StaffIdentity:
    """Load the caller's account and compute their live permission level."""
    user = await UserOperations(session).get_by_id(payload.id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    level, roles = await resolve_permission_level(
        client,
        mapping,
        settings.discord_guild_id,
        user.discord_id,
    )
    return StaffIdentity(
        user_id=user.id,
        discord_id=user.discord_id,
        username=user.username,
        permission_level=level,
        discord_roles=roles,
        user=user,
    )


def require_level(level: int) -> Callable:
    """Dependency factory rejecting callers below ``level`` with 403."""

    async def dependency(
        identity: StaffIdentity = Depends(get_staff_identity),
    ) -> StaffIdentity:
        if identity.permission_level < level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permission level",
            )
        return identity

    return dependency
