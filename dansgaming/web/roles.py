"""Mapping between Discord role ids and staff ranks.

Every permission decision routes through this table. A member's permission
level is the highest level among the ranks their current role ids map to:

    Admin = 1, Management = 2, Founder = 3, no staff role = 0
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Union

from dansgaming.shared.config import Settings


class Rank(str, Enum):
    """Staff ranks, highest first."""

    FOUNDER = "Founder"
    MANAGEMENT = "Management"
    ADMIN = "Admin"


RANK_LEVELS: Dict[Rank, int] = {
    Rank.FOUNDER: 3,
    Rank.MANAGEMENT: 2,
    Rank.ADMIN: 1,
}

# Display order of the roster
RANK_ORDER = (Rank.FOUNDER, Rank.MANAGEMENT, Rank.ADMIN)

DEFAULT_ROLE_IDS: Dict[Rank, str] = {
    Rank.FOUNDER: "1394520034700693534",
    Rank.MANAGEMENT: "765079181666156545",
    Rank.ADMIN: "885301651538329651",
}
DEFAULT_RETIRED_ROLE_ID = "761356380363816961"

MANAGEMENT_LEVEL = RANK_LEVELS[Rank.MANAGEMENT]


def level_for_rank(rank: Union[Rank, str]) -> int:
    """Permission level granted by ``rank``.

    Raises:
        ValueError: If ``rank`` is not a staff rank
    """
    return RANK_LEVELS[Rank(rank)]


def access_level_for_level(level: int) -> Rank:
    """Default document access level for a caller at ``level``."""
    if level >= RANK_LEVELS[Rank.FOUNDER]:
        return Rank.FOUNDER
    if level >= RANK_LEVELS[Rank.MANAGEMENT]:
        return Rank.MANAGEMENT
    return Rank.ADMIN


class RoleMapping:
    """Bidirectional rank <-> role id table plus the Retired marker role."""

    def __init__(
        self,
        role_ids: Optional[Mapping[Union[Rank, str], str]] = None,
        retired_role_id: str = DEFAULT_RETIRED_ROLE_ID,
    ):
        source = role_ids if role_ids is not None else DEFAULT_ROLE_IDS
        self._rank_to_role: Dict[Rank, str] = {Rank(rank): str(role_id) for rank, role_id in source.items()}

        missing = [rank.value for rank in Rank if rank not in self._rank_to_role]
        if missing:
            raise ValueError(f"No role id configured for ranks: {', '.join(missing)}")

        self._role_to_rank: Dict[str, Rank] = {}
        for rank, role_id in self._rank_to_role.items():
            if role_id in self._role_to_rank:
                raise ValueError(
                    f"Role id {role_id} is mapped to both "
                    f"{self._role_to_rank[role_id].value} and {rank.value}"
                )
            self._role_to_rank[role_id] = rank

        if retired_role_id in self._role_to_rank:
            raise ValueError(f"Retired role id {retired_role_id} collides with a rank role id")
        self.retired_role_id = retired_role_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoleMapping":
        return cls(
            {
                Rank.FOUNDER: settings.founder_role_id,
                Rank.MANAGEMENT: settings.management_role_id,
                Rank.ADMIN: settings.admin_role_id,
            },
            retired_role_id=settings.retired_role_id,
        )

    def rank_for_role_id(self, role_id: str) -> Optional[Rank]:
        return self._role_to_rank.get(str(role_id))

    def role_id_for_rank(self, rank: Union[Rank, str]) -> str:
        return self._rank_to_role[Rank(rank)]

    def level_for_rank(self, rank: Union[Rank, str]) -> int:
        return level_for_rank(rank)

    def highest_rank(self, role_ids: Iterable[str]) -> Optional[Rank]:
        """Highest-priority rank among ``role_ids``, or None."""
        best: Optional[Rank] = None
        for role_id in role_ids:
            rank = self.rank_for_role_id(role_id)
            if rank is not None and (best is None or RANK_LEVELS[rank] > RANK_LEVELS[best]):
                best = rank
        return best

    def permission_level(self, role_ids: Iterable[str]) -> int:
        rank = self.highest_rank(role_ids)
        return RANK_LEVELS[rank] if rank is not None else 0

    def is_staff(self, role_ids: Iterable[str]) -> bool:
        return self.highest_rank(role_ids) is not None

    def as_dict(self) -> Dict[str, str]:
        """Role id -> rank name, as shown by the server-roles endpoint."""
        return {role_id: rank.value for role_id, rank in self._role_to_rank.items()}
