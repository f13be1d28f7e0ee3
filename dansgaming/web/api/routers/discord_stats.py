"""Discord server statistics for the admin dashboard."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends

from dansgaming.shared.config import Settings
from dansgaming.web.api.dependencies import (
    get_app_settings,
    get_discord_client,
    require_staff_token,
)
from dansgaming.web.discord import (
    DISCORD_CDN,
    DiscordClient,
    DiscordConfigurationError,
    snowflake_time,
)
from dansgaming.web.security import TokenPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/discord-stats", tags=["Discord Stats"])

TEXT_CHANNEL = 0
AUDIT_LOG_LIMIT = 50
RECENT_ACTIVITY_LIMIT = 20

AUDIT_ACTIONS = {
    1: "Server settings updated",
    10: "Channel created",
    11: "Channel updated",
    12: "Channel deleted",
    13: "Channel permissions updated",
    14: "Channel permissions updated",
    15: "Channel permissions removed",
    20: "Kicked {target}",
    21: "Members pruned from server",
    22: "Banned {target}",
    23: "Unbanned {target}",
    24: "Member updated",
    25: "Member roles updated",
    26: "Member moved to voice channel",
    27: "Member disconnected from voice",
    28: "Bot added to server",
    30: "Role created",
    31: "Role updated",
    32: "Role deleted",
    40: "Invite created",
    41: "Invite updated",
    42: "Invite deleted",
    50: "Webhook created",
    51: "Webhook updated",
    52: "Webhook deleted",
    60: "Emoji created",
    61: "Emoji updated",
    62: "Emoji deleted",
    72: "Message deleted",
    73: "Messages bulk deleted",
    74: "Message pinned",
    75: "Message unpinned",
    80: "Integration created",
    81: "Integration updated",
    82: "Integration deleted",
    83: "Stage instance created",
    84: "Stage instance updated",
    85: "Stage instance deleted",
    90: "Sticker created",
    91: "Sticker updated",
    92: "Sticker deleted",
    100: "Scheduled event created",
    101: "Scheduled event updated",
    102: "Scheduled event deleted",
    110: "Thread created",
    111: "Thread updated",
    112: "Thread deleted",
}


def _require_client(client: Optional[DiscordClient], settings: Settings) -> DiscordClient:
    missing = settings.missing_discord_config()
    if client is None and "DISCORD_BOT_TOKEN" not in missing:
        missing.append("DISCORD_BOT_TOKEN")
    if missing:
        raise DiscordConfigurationError(missing)
    return client


def describe_audit_entry(entry: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Turn one audit log entry into a dashboard activity item."""
    action = entry.get("action_type")
    actor = users.get(str(entry.get("user_id")))
    target = users.get(str(entry.get("target_id")))
    actor_name = actor["username"] if actor else "Unknown User"

    template = AUDIT_ACTIONS.get(action, f"Action type {action} performed")
    details = template.format(target=target["username"] if target else "user")
    if entry.get("reason"):
        details = f"{details} - {entry['reason']}"

    return {
        "id": str(entry["id"]),
        "timestamp": snowflake_time(entry["id"]).isoformat(),
        "type": action,
        "user": actor_name,
        "moderator": actor_name,
        "details": details,
    }


@router.get("/server-stats")
async def server_stats(
    client: Optional[DiscordClient] = Depends(get_discord_client),
    settings: Settings = Depends(get_app_settings),
    token: TokenPayload = Depends(require_staff_token),
) -> Dict[str, Any]:
    client = _require_client(client, settings)
    guild_id = settings.discord_guild_id

    guild = await client.fetch_guild_info(guild_id)
    channels = await client.fetch_guild_channels(guild_id)
    roles = await client.fetch_guild_roles(guild_id)

    return {
        "totalMembers": guild.get("approximate_member_count") or 0,
        "onlineMembers": guild.get("approximate_presence_count") or 0,
        "activeChannels": sum(1 for channel in channels if channel.get("type") == TEXT_CHANNEL),
        "totalRoles": sum(
            1 for role in roles if role.get("name") != "@everyone" and not role.get("managed")
        ),
        "serverName": guild.get("name"),
        "serverIcon": (
            f"{DISCORD_CDN}/icons/{guild_id}/{guild['icon']}.png" if guild.get("icon") else None
        ),
        "verificationLevel": guild.get("verification_level"),
        "boostLevel": guild.get("premium_tier"),
        "boostCount": guild.get("premium_subscription_count") or 0,
    }


@router.get("/recent-activity")
async def recent_activity(
    client: Optional[DiscordClient] = Depends(get_discord_client),
    settings: Settings = Depends(get_app_settings),
    token: TokenPayload = Depends(require_staff_token),
) -> List[Dict[str, Any]]:
    """The latest audit log entries, newest first."""
    client = _require_client(client, settings)
    audit_log = await client.fetch_audit_logs(settings.discord_guild_id, limit=AUDIT_LOG_LIMIT)

    users = {str(user["id"]): user for user in audit_log.get("users") or []}
    seen = set()
    activities = []
    for entry in audit_log.get("audit_log_entries") or []:
        if entry["id"] in seen:
            continue
        seen.add(entry["id"])
        activities.append(describe_audit_entry(entry, users))

    activities.sort(key=lambda activity: activity["timestamp"], reverse=True)
    return activities[:RECENT_ACTIVITY_LIMIT]
