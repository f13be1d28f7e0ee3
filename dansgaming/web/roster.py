"""Staff roster reconciliation between the Discord guild and the local database.

Discord role membership is authoritative for who is staff and at what rank;
the ``users`` table contributes metadata (PlayFab id, recruitment date,
status) and ``past_staff`` keeps the removal archive. Role changes go to
Discord first and the member cache is invalidated whenever Discord state may
have changed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from dansgaming.shared.config import Settings
from dansgaming.web.crud import (
    ConflictError,
    NotFoundError,
    PastStaffOperations,
    UserOperations,
    ValidationError,
)
from dansgaming.web.discord import (
    DiscordAPIError,
    DiscordClient,
    DiscordConfigurationError,
    DiscordNotFoundError,
    DiscordPermissionError,
    DiscordRateLimitError,
    GuildMember,
)
from dansgaming.web.member_cache import GuildMemberCache
from dansgaming.web.models import PastStaff, STAFF_STATUSES, User
from dansgaming.web.roles import RANK_ORDER, Rank, RoleMapping

logger = logging.getLogger(__name__)

MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 20


@dataclass
class StaffMember:
    """A guild member holding a staff rank, merged with local metadata."""

    id: str
    username: str
    display_name: str
    rank: Rank
    avatar: Optional[str] = None
    playfab_id: str = ""
    steam64_id: str = ""
    recruitment_date: Optional[date] = None
    status: str = "Active"
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "rank": self.rank.value,
            "playfabId": self.playfab_id,
            "steam64Id": self.steam64_id,
            "recruitmentDate": self.recruitment_date.isoformat() if self.recruitment_date else None,
            "status": self.status,
            "isActive": self.is_active,
            "avatar": self.avatar,
        }


@dataclass
class FullRoster:
    active_staff: List[StaffMember]
    past_staff: List[PastStaff]


@dataclass
class DegradedRoster:
    """Roster built without guild data because the bot lacks permissions."""

    active_staff: List[StaffMember]
    past_staff: List[PastStaff]
    reason: str


@dataclass
class RateLimitedRoster:
    retry_after: float


RosterResult = Union[FullRoster, DegradedRoster, RateLimitedRoster]


class RankChangeOutcome(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"  # old role revoked, new role not granted
    FAILED = "failed"  # nothing changed


@dataclass
class RankChangeResult:
    outcome: RankChangeOutcome
    current_rank: Optional[Rank]
    error: Optional[str] = None
    retry_after: Optional[float] = None


class KeyedLocks:
    """Registry of ``asyncio.Lock`` objects keyed by string.

    A key's lock lives only while some task holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def fallback_staff_from_settings(settings: Settings) -> StaffMember:
    """Single roster entry shown when guild members cannot be read."""
    return StaffMember(
        id=settings.fallback_staff_id,
        username=settings.fallback_staff_username,
        display_name=settings.fallback_staff_username,
        rank=Rank(settings.fallback_staff_rank),
    )


def parse_rank(value: Union[Rank, str]) -> Rank:
    try:
        return Rank(value)
    except ValueError as e:
        raise ValidationError("Invalid role name") from e


class StaffRoster:
    """Reads and mutates the staff roster.

    One instance serves one request: it is bound to that request's database
    session, while the Discord client, member cache, role mapping and lock
    registry are shared process-wide.

    Args:
        session: Database session for the current request
        client: Discord client, or None when no bot token is configured
        cache: Shared guild member cache, or None when Discord is unconfigured
        mapping: Rank <-> role id table
        guild_id: Discord guild id
        locks: Shared per-user lock registry used by ``retire``
        fallback: Entry returned by a degraded roster read
    """

    def __init__(
        self,
        session: AsyncSession,
        client: Optional[DiscordClient],
        cache: Optional[GuildMemberCache],
        mapping: RoleMapping,
        guild_id: str,
        locks: Optional[KeyedLocks] = None,
        fallback: Optional[StaffMember] = None,
    ):
        self.users = UserOperations(session)
        self.past_staff = PastStaffOperations(session)
        self.client = client
        self.cache = cache
        self.mapping = mapping
        self.guild_id = guild_id
        self.locks = locks if locks is not None else KeyedLocks()
        self.fallback = fallback

    def _require_discord(self) -> None:
        missing = []
        if not self.guild_id:
            missing.append("DISCORD_GUILD_ID")
        if self.client is None or self.cache is None:
            missing.append("DISCORD_BOT_TOKEN")
        if missing:
            raise DiscordConfigurationError(missing)

    def _merge(self, member: GuildMember, rank: Rank, user: Optional[User]) -> StaffMember:
        return StaffMember(
            id=member.id,
            username=member.username,
            display_name=member.display_name,
            rank=rank,
            avatar=member.avatar_url,
            playfab_id=(user.playfab_id or "") if user else "",
            steam64_id=(user.steam64_id or "") if user else "",
            recruitment_date=user.recruitment_date if user else None,
            status=(user.status or "Active") if user else "Active",
        )

    async def get_roster(self) -> RosterResult:
        """Build the active and past staff lists.

        Returns:
            FullRoster on success, DegradedRoster when the bot is denied
            access to guild members, RateLimitedRoster when Discord keeps
            answering 429 after retries.
        """
        self._require_discord()

        try:
            members = await self.cache.get_members()
        except DiscordRateLimitError as e:
            logger.warning(f"Roster unavailable, Discord rate limited for {e.retry_after}s")
            return RateLimitedRoster(retry_after=e.retry_after)
        except DiscordPermissionError as e:
            logger.error(
                "Discord bot lacks permissions to list guild members. Ensure the Server "
                "Members Intent is enabled and the bot can view server members. "
                f"Returning fallback roster. ({e})"
            )
            past = await self.past_staff.list_past_staff()
            active = [self.fallback] if self.fallback is not None else []
            return DegradedRoster(
                active_staff=active,
                past_staff=past,
                reason="Discord bot lacks permission to read guild members",
            )

        ranked = []
        for member in members:
            rank = self.mapping.highest_rank(member.roles)
            if rank is not None:
                ranked.append((member, rank))

        users = await self.users.get_by_discord_ids(member.id for member, _ in ranked)
        active = [self._merge(member, rank, users.get(member.id)) for member, rank in ranked]
        active.sort(key=lambda staff: (RANK_ORDER.index(staff.rank), staff.display_name.casefold()))

        past = await self.past_staff.list_past_staff()
        logger.info(f"Roster built: {len(active)} active staff, {len(past)} past staff")
        return FullRoster(active_staff=active, past_staff=past)

    async def _revoke_retired(self, user_id: str) -> None:
        try:
            await self.client.revoke_role(self.guild_id, user_id, self.mapping.retired_role_id)
        except DiscordAPIError as e:
            logger.info(f"Could not remove Retired role from user {user_id}: {e}")

    async def _grant_retired(self, user_id: str) -> None:
        try:
            await self.client.grant_role(self.guild_id, user_id, self.mapping.retired_role_id)
        except DiscordAPIError as e:
            logger.error(f"Could not add Retired role to user {user_id}: {e}")

    async def _current_rank(self, user_id: str) -> Optional[Rank]:
        try:
            member = await self.client.fetch_guild_member(self.guild_id, user_id)
        except DiscordAPIError as e:
            logger.error(f"Could not re-read roles for user {user_id}: {e}")
            return None
        return self.mapping.highest_rank(member.roles)

    async def promote(self, user_id: str, rank: Union[Rank, str]) -> StaffMember:
        """Give a member a staff rank and drop the Retired marker."""
        rank = parse_rank(rank)
        self._require_discord()

        await self._revoke_retired(user_id)
        await self.client.grant_role(self.guild_id, user_id, self.mapping.role_id_for_rank(rank))
        self.cache.invalidate()

        member = await self.client.fetch_guild_member(self.guild_id, user_id)
        user = await self.users.get_by_discord_id(user_id)
        logger.info(f"Promoted {member.display_name} ({user_id}) to {rank.value}")
        return self._merge(member, rank, user)

    async def change_rank(
        self,
        user_id: str,
        from_rank: Union[Rank, str],
        to_rank: Union[Rank, str],
    ) -> RankChangeResult:
        """Move a member between ranks.

        Discord offers no atomic swap, so this is a revoke followed by a
        grant. The member's live roles are re-read afterwards and reported
        as ``current_rank`` whatever the outcome.

        Raises:
            DiscordRateLimitError: If the revoke is rate limited. Nothing has
                changed at that point and the roles are not re-read.
        """
        from_rank = parse_rank(from_rank)
        to_rank = parse_rank(to_rank)
        if from_rank == to_rank:
            raise ValidationError("New rank must differ from the current rank")
        self._require_discord()

        try:
            await self.client.revoke_role(
                self.guild_id, user_id, self.mapping.role_id_for_rank(from_rank)
            )
        except DiscordRateLimitError:
            logger.warning(f"Rank change for {user_id} rate limited before any change")
            raise
        except DiscordAPIError as e:
            logger.error(f"Rank change for {user_id} failed revoking {from_rank.value}: {e}")
            return RankChangeResult(
                outcome=RankChangeOutcome.FAILED,
                current_rank=await self._current_rank(user_id),
                error=str(e),
            )

        self.cache.invalidate()

        try:
            await self.client.grant_role(
                self.guild_id, user_id, self.mapping.role_id_for_rank(to_rank)
            )
        except DiscordAPIError as e:
            logger.error(
                f"Rank change for {user_id} left partial: revoked {from_rank.value} "
                f"but granting {to_rank.value} failed: {e}"
            )
            return RankChangeResult(
                outcome=RankChangeOutcome.PARTIAL,
                current_rank=await self._current_rank(user_id),
                error=str(e),
                retry_after=getattr(e, "retry_after", None),
            )

        current = await self._current_rank(user_id)
        logger.info(f"Changed rank of {user_id} from {from_rank.value} to {to_rank.value}")
        return RankChangeResult(outcome=RankChangeOutcome.COMPLETE, current_rank=current)

    async def demote(self, user_id: str, rank: Union[Rank, str]) -> None:
        """Remove a staff rank and mark the member Retired, without archiving."""
        rank = parse_rank(rank)
        self._require_discord()

        await self.client.revoke_role(self.guild_id, user_id, self.mapping.role_id_for_rank(rank))
        await self._grant_retired(user_id)
        self.cache.invalidate()
        logger.info(f"Removed {rank.value} from {user_id}")

    async def retire(self, user_id: str, rank: Union[Rank, str], reason: str) -> PastStaff:
        """Remove a staff rank and archive the member in ``past_staff``.

        Retirements of the same member are serialized, and the member must
        still hold ``rank`` when the lock is acquired, so concurrent requests
        produce one archive row.

        Raises:
            ValidationError: If ``reason`` is blank or the rank is invalid
            NotFoundError: If the member is not in the guild
            ConflictError: If the member no longer holds ``rank``
        """
        if not reason or not reason.strip():
            raise ValidationError("Removal reason is required")
        rank = parse_rank(rank)
        self._require_discord()
        role_id = self.mapping.role_id_for_rank(rank)

        async with self.locks.lock(user_id):
            try:
                member = await self.client.fetch_guild_member(self.guild_id, user_id)
            except DiscordNotFoundError as e:
                raise NotFoundError(f"Member {user_id} not found in guild") from e

            if role_id not in member.roles:
                raise ConflictError(f"Member {user_id} no longer holds the {rank.value} role")

            await self.client.revoke_role(self.guild_id, user_id, role_id, reason=reason)
            await self._grant_retired(user_id)
            self.cache.invalidate()

            user = await self.users.get_by_discord_id(user_id)
            record = await self.past_staff.add_past_staff(
                discord_id=user_id,
                username=member.username,
                display_name=member.display_name,
                rank=rank.value,
                playfab_id=user.playfab_id if user else None,
                recruitment_date=user.recruitment_date if user else None,
                removal_reason=reason.strip(),
            )

        logger.info(f"Retired {member.display_name} ({user_id}) from {rank.value}")
        return record

    async def update_metadata(
        self,
        discord_id: str,
        playfab_id: Optional[str] = None,
        recruitment_date: Optional[date] = None,
        status: Optional[str] = None,
    ) -> User:
        """Upsert local staff metadata. Never calls Discord."""
        if not discord_id:
            raise ValidationError("Discord ID is required")
        if status and status not in STAFF_STATUSES:
            raise ValidationError(f"Invalid status: {status}")

        user, created = await self.users.update_staff_metadata(
            discord_id,
            playfab_id=playfab_id,
            recruitment_date=recruitment_date,
            status=status,
        )
        if created:
            logger.info(f"Created placeholder account for staff member {discord_id}")
        return user

    async def search_members(self, query: str, limit: int = SEARCH_LIMIT) -> List[Dict[str, Any]]:
        """Non-staff guild members matching ``query``.

        Display name and username match case-insensitively; the Discord id
        matches as a plain substring.
        """
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            raise ValidationError(
                f"Search query must be at least {MIN_SEARCH_LENGTH} characters"
            )
        self._require_discord()

        needle = query.casefold()
        results: List[Dict[str, Any]] = []
        for member in await self.cache.get_members():
            if self.mapping.is_staff(member.roles):
                continue
            if (
                needle in member.display_name.casefold()
                or needle in member.username.casefold()
                or query in member.id
            ):
                results.append({
                    "id": member.id,
                    "username": member.username,
                    "displayName": member.display_name,
                    "avatar": member.avatar_url,
                })
                if len(results) >= limit:
                    break
        return results

    async def debug_members(self) -> Dict[str, Any]:
        """Every cached member with role ids, for diagnosing role mappings."""
        self._require_discord()
        members = await self.cache.get_members()
        age = self.cache.age
        return {
            "totalMembers": len(members),
            "members": [
                {
                    "id": member.id,
                    "username": member.username,
                    "displayName": member.display_name,
                    "roles": list(member.roles),
                    "hasStaffRole": self.mapping.is_staff(member.roles),
                }
                for member in members
            ],
            "roleMappings": self.mapping.as_dict(),
            "cacheInfo": {
                "isCached": self.cache.is_cached,
                "cacheAge": int(age) if age is not None else None,
            },
        }

    async def server_roles(self) -> Dict[str, Any]:
        self._require_discord()
        roles = await self.client.fetch_guild_roles(self.guild_id)
        return {
            "roles": [
                {"id": str(role["id"]), "name": role.get("name"), "color": role.get("color", 0)}
                for role in roles
            ],
            "currentMappings": self.mapping.as_dict(),
        }

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()
