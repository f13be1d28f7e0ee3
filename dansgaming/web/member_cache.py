"""Time-boxed cache of the full guild member list."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from dansgaming.web.discord import DiscordClient, GuildMember

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0


class GuildMemberCache:
    """Holds the last successful full member fetch for ``ttl`` seconds.

    The snapshot is replaced as a whole. Concurrent misses are not
    deduplicated; each one performs its own fetch and the last to finish
    wins. ``invalidate`` may be called while a fetch is in flight, in which
    case that fetch repopulates the cache when it resolves.
    """

    def __init__(
        self,
        client: DiscordClient,
        guild_id: str,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.guild_id = guild_id
        self.ttl = ttl
        self._clock = clock
        self._members: Optional[List[GuildMember]] = None
        self._fetched_at: Optional[float] = None

    @property
    def is_cached(self) -> bool:
        return (
            self._members is not None
            and self._fetched_at is not None
            and self._clock() - self._fetched_at < self.ttl
        )

    @property
    def age(self) -> Optional[float]:
        """Seconds since the snapshot was taken, or None when empty."""
        if self._fetched_at is None:
            return None
        return self._clock() - self._fetched_at

    async def get_members(self) -> List[GuildMember]:
        if self.is_cached:
            logger.debug(f"Using cached guild members ({len(self._members)} members)")
            return self._members

        logger.info(f"Fetching guild members for guild {self.guild_id}")
        members = await self.client.fetch_guild_members(self.guild_id)
        self._members = members
        self._fetched_at = self._clock()
        return members

    def invalidate(self) -> None:
        self._members = None
        self._fetched_at = None
        logger.info("Guild member cache cleared")
