"""Staff roster API router.

Reads combine the cached guild member list with local staff metadata.
Role changes are applied on Discord and require a live Admin rank or
higher; metadata and past-staff edits only touch the database.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from dansgaming.web.api.dependencies import (
    get_staff_roster,
    require_level,
    require_staff_token,
)
from dansgaming.web.api.schemas import (
    ChangeRankRequest,
    PastStaffCreate,
    PastStaffDelete,
    PastStaffUpdate,
    RateLimitErrorResponse,
    RemoveRoleRequest,
    RoleChangeRequest,
    SuccessResponse,
    UpdateStaffRequest,
)
from dansgaming.web.discord import DiscordPermissionError
from dansgaming.web.roles import RANK_LEVELS, Rank
from dansgaming.web.roster import (
    DegradedRoster,
    RankChangeOutcome,
    RateLimitedRoster,
    StaffRoster,
)
from dansgaming.web.security import StaffIdentity, TokenPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/staff", tags=["Staff Roster"])

MANAGE_ROLES_ERROR = {
    "error": "Discord bot permissions error. Bot needs Manage Roles permission.",
    "details": (
        "Make sure the bot has the \"Manage Roles\" permission and is above "
        "the role it's trying to manage"
    ),
}

require_admin = require_level(RANK_LEVELS[Rank.ADMIN])


@router.get("/roster")
async def get_roster(
    request: Request,
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
):
    """Active staff from Discord plus the past-staff archive.

    A rate-limited read answers 429 with the wait time. When the bot cannot
    read guild members the response carries ``degraded`` and a fallback
    active list.
    """
    result = await roster.get_roster()

    if isinstance(result, RateLimitedRoster):
        body = RateLimitErrorResponse.for_retry_after(
            result.retry_after, getattr(request.state, "request_id", None)
        )
        return JSONResponse(status_code=429, content=body.model_dump(mode="json"))

    content: Dict[str, Any] = {
        "activeStaff": [member.to_dict() for member in result.active_staff],
        "pastStaff": [record.to_dict() for record in result.past_staff],
    }
    if isinstance(result, DegradedRoster):
        content["degraded"] = True
        content["reason"] = result.reason
    return content


@router.get("/server-roles")
async def get_server_roles(
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> Dict[str, Any]:
    return await roster.server_roles()


@router.get("/search-members")
async def search_members(
    query: str = Query(""),
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> Dict[str, Any]:
    """Non-staff guild members matching ``query`` (at most 20)."""
    return {"members": await roster.search_members(query)}


@router.get("/debug-members")
async def debug_members(
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> Dict[str, Any]:
    return await roster.debug_members()


@router.post("/clear-cache")
async def clear_cache(
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> Dict[str, str]:
    roster.clear_cache()
    logger.info(f"Guild member cache cleared by {token.username}")
    return {"message": "Cache cleared successfully"}


@router.post("/add-role")
async def add_role(
    body: RoleChangeRequest,
    roster: StaffRoster = Depends(get_staff_roster),
    identity: StaffIdentity = Depends(require_admin),
) -> Dict[str, Any]:
    """Grant a staff rank and remove the Retired role."""
    try:
        staff_member = await roster.promote(body.user_id, body.role_name)
    except DiscordPermissionError:
        logger.error(f"Bot cannot manage roles while promoting {body.user_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=MANAGE_ROLES_ERROR
        )

    logger.info(f"{identity.username} added {body.role_name.value} to {body.user_id}")
    return {
        "success": True,
        "message": (
            f"Successfully added {body.role_name.value} role to "
            f"{staff_member.display_name} and removed Retired role"
        ),
        "staffMember": staff_member.to_dict(),
    }


@router.delete("/remove-role")
async def remove_role(
    body: RemoveRoleRequest,
    roster: StaffRoster = Depends(get_staff_roster),
    identity: StaffIdentity = Depends(require_admin),
) -> Dict[str, Any]:
    """Remove a staff rank and grant the Retired role.

    With a ``reason`` the member is also archived to past staff.
    """
    rank = body.role_name.value
    try:
        if body.reason is not None:
            record = await roster.retire(body.user_id, body.role_name, body.reason)
            logger.info(f"{identity.username} retired {body.user_id} from {rank}")
            return {
                "success": True,
                "message": f"Successfully removed {rank} role, added Retired role and archived to past staff",
                "pastStaff": record.to_dict(),
            }

        await roster.demote(body.user_id, body.role_name)
    except DiscordPermissionError:
        logger.error(f"Bot cannot manage roles while removing {rank} from {body.user_id}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=MANAGE_ROLES_ERROR
        )

    logger.info(f"{identity.username} removed {rank} from {body.user_id}")
    return {
        "success": True,
        "message": f"Successfully removed {rank} role from user and added Retired role",
    }


@router.put("/change-rank")
async def change_rank(
    body: ChangeRankRequest,
    roster: StaffRoster = Depends(get_staff_roster),
    identity: StaffIdentity = Depends(require_admin),
):
    """Move a member between ranks.

    Any outcome other than complete answers 502 with the member's live rank
    so the caller can see what state Discord was left in. A rate-limited
    revoke changes nothing and answers 429.
    """
    result = await roster.change_rank(body.user_id, body.from_rank, body.to_rank)
    current = result.current_rank.value if result.current_rank else None

    if result.outcome == RankChangeOutcome.COMPLETE:
        logger.info(
            f"{identity.username} changed {body.user_id} from "
            f"{body.from_rank.value} to {body.to_rank.value}"
        )
        return {
            "success": True,
            "message": f"Rank changed from {body.from_rank.value} to {body.to_rank.value}",
            "currentRank": current,
        }

    partial = result.outcome == RankChangeOutcome.PARTIAL
    content: Dict[str, Any] = {
        "success": False,
        "partial": partial,
        "error": (
            f"{body.from_rank.value} role was removed but {body.to_rank.value} could not be granted"
            if partial
            else f"Could not remove {body.from_rank.value} role; no changes were made"
        ),
        "details": result.error,
        "currentRank": current,
    }
    if result.retry_after is not None:
        content["retryAfter"] = result.retry_after
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)


@router.put("/update-staff", response_model=SuccessResponse)
async def update_staff(
    body: UpdateStaffRequest,
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> SuccessResponse:
    await roster.update_metadata(
        body.discord_id,
        playfab_id=body.playfab_id,
        recruitment_date=body.recruitment_date,
        status=body.status,
    )
    return SuccessResponse(message="Staff member information updated successfully")


@router.post("/add-past-staff", response_model=SuccessResponse)
async def add_past_staff(
    body: PastStaffCreate,
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> SuccessResponse:
    await roster.past_staff.add_past_staff(
        discord_id=body.discord_id,
        username=body.username,
        display_name=body.display_name,
        rank=body.rank,
        playfab_id=body.playfab_id,
        recruitment_date=body.recruitment_date,
        removal_reason=body.removal_reason,
    )
    return SuccessResponse(message="Staff member added to past staff successfully")


@router.put("/update-past-staff", response_model=SuccessResponse)
async def update_past_staff(
    body: PastStaffUpdate,
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> SuccessResponse:
    updates = body.model_dump(exclude={"discord_id"}, exclude_unset=True)
    await roster.past_staff.update_past_staff(body.discord_id, **updates)
    return SuccessResponse(message="Past staff member updated successfully")


@router.delete("/remove-past-staff", response_model=SuccessResponse)
async def remove_past_staff(
    body: PastStaffDelete,
    roster: StaffRoster = Depends(get_staff_roster),
    token: TokenPayload = Depends(require_staff_token),
) -> SuccessResponse:
    await roster.past_staff.remove_past_staff(body.discord_id)
    return SuccessResponse(message="Past staff member removed successfully")
