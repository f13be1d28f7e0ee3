"""Discord OAuth sign-in for staff.

The callback redirects the browser back to the admin front end with a
session token, or to the staff login page with an error code.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from dansgaming.shared.config import Settings
from dansgaming.shared.database import get_db_session
from dansgaming.web.api.dependencies import (
    get_app_settings,
    get_discord_client,
    get_discord_oauth,
    get_staff_identity,
)
from dansgaming.web.crud import UserOperations
from dansgaming.web.discord import DiscordClient, DiscordConfigurationError, avatar_url
from dansgaming.web.discord_oauth import DiscordOAuth
from dansgaming.web.security import StaffIdentity, create_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/discord-auth", tags=["Discord Auth"])


def _login_error(settings: Settings, code: str) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.staff_login_path}?{urlencode({'error': code})}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/login")
async def login(
    oauth: DiscordOAuth = Depends(get_discord_oauth),
) -> Dict[str, str]:
    """Discord consent URL for the front end to redirect to."""
    try:
        auth_url, state = oauth.authorization_url()
    except DiscordConfigurationError as e:
        logger.error(f"Discord OAuth not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Discord OAuth not configured: {', '.join(e.missing)}",
        )
    return {"authUrl": auth_url, "state": state}


@router.get("/callback")
async def callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    oauth: DiscordOAuth = Depends(get_discord_oauth),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_app_settings),
    client: Optional[DiscordClient] = Depends(get_discord_client),
):
    """Complete the OAuth flow and hand a session token to the admin page.

    When ``ALLOWED_ROLES`` is set the member must hold one of those roles.
    A failed role lookup is logged and does not block the login.
    """
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Authorization code required",
        )

    try:
        access_token = await oauth.exchange_code(code)
        discord_user = await oauth.fetch_current_user(access_token)
        discord_id = str(discord_user["id"])
        username = discord_user["username"]

        allowed = settings.allowed_role_ids
        if allowed and client is not None and settings.discord_guild_id:
            try:
                member = await client.fetch_guild_member(settings.discord_guild_id, discord_id)
            except Exception as e:
                logger.error(f"Role check failed for {discord_id}, allowing login: {e}")
            else:
                if not any(role_id in allowed for role_id in member.roles):
                    logger.warning(f"Login denied for {username} ({discord_id}): no allowed role")
                    return _login_error(settings, "access_denied")
        else:
            logger.info("Skipping allowed-role check, role restriction not configured")

        user = await UserOperations(session).record_discord_login(
            discord_id,
            username,
            avatar_url(discord_id, discord_user.get("avatar")),
        )
        token = create_access_token(user, settings)

    except Exception as e:
        logger.error(f"Discord OAuth callback failed: {e}")
        return _login_error(settings, "authentication_failed")

    logger.info(f"Staff login for {username} ({discord_id})")
    return RedirectResponse(
        f"{settings.admin_redirect_path}?{urlencode({'token': token})}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/verify")
async def verify(
    identity: StaffIdentity = Depends(get_staff_identity),
) -> Dict[str, Any]:
    """Confirm the token and report the caller's live Discord roles."""
    user = identity.user.to_dict()
    user["discord_roles"] = identity.discord_roles
    user["permission_level"] = identity.permission_level
    return {"valid": True, "user": user}
