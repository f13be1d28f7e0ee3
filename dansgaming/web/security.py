"""Session tokens and live permission resolution.

Two separate authorities gate staff endpoints. The token carries a coarse
``role`` category that is checked before anything else. The permission level
is recomputed on every privileged request from the caller's current Discord
roles and is never read from the token.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import jwt
from pydantic import BaseModel

from dansgaming.shared.config import Settings, get_settings
from dansgaming.web.discord import DiscordClient
from dansgaming.web.models import User
from dansgaming.web.roles import RoleMapping

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Token is malformed, has a bad signature, or has expired."""
    pass


class TokenPayload(BaseModel):
    id: int
    username: str
    discord_id: Optional[str] = None
    role: str
    exp: int


@dataclass
class StaffIdentity:
    """The authenticated caller with their live permission level."""

    user_id: int
    discord_id: Optional[str]
    username: str
    permission_level: int
    discord_roles: List[str] = field(default_factory=list)
    user: Optional[User] = None

    @property
    def author_id(self) -> str:
        """Identifier recorded as a document author."""
        return self.discord_id or str(self.user_id)


def create_access_token(user: User, settings: Optional[Settings] = None) -> str:
    """Issue a signed session token for ``user``."""
    settings = settings or get_settings()
    expires = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "id": user.id,
        "username": user.username,
        "discord_id": user.discord_id,
        "role": user.role,
        "exp": expires,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> TokenPayload:
    """Validate signature and expiry and return the payload.

    Raises:
        TokenError: If the token cannot be trusted
    """
    settings = settings or get_settings()
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return TokenPayload.model_validate(data)
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token has expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}") from e
    except ValueError as e:
        raise TokenError(f"Invalid token payload: {e}") from e


async def resolve_permission_level(
    client: Optional[DiscordClient],
    mapping: RoleMapping,
    guild_id: str,
    discord_id: Optional[str],
) -> Tuple[int, List[str]]:
    """Fetch one member's current roles and compute their permission level.

    Returns level 0 with no roles when the caller has no Discord identity,
    Discord is not configured, or the lookup fails for any reason.
    """
    if not discord_id or client is None or not guild_id:
        return 0, []

    try:
        member = await client.fetch_guild_member(guild_id, discord_id)
    except Exception as e:
        logger.warning(f"Could not fetch Discord roles for {discord_id}, treating as level 0: {e}")
        return 0, []

    roles = list(member.roles)
    return mapping.permission_level(roles), roles
