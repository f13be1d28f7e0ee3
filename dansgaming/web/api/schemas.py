"""Pydantic request and response models for the staff API.

Request bodies use the camelCase field names the admin front end sends;
``populate_by_name`` also accepts the snake_case attribute names.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dansgaming.web.roles import Rank

StaffStatus = Literal["Active", "Exempt", "Inactive", "On Leave"]
AccessLevel = Literal["Admin", "Management", "Founder"]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Errors

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Body of every error response. ``error`` is the human-readable message."""

    error: str
    type: str
    timestamp: datetime
    request_id: Optional[str] = None


class ValidationErrorResponse(ErrorResponse):
    errors: List[ErrorDetail] = Field(default_factory=list)


class RateLimitErrorResponse(ErrorResponse):
    retryAfter: int
    message: str

    @classmethod
    def for_retry_after(
        cls, retry_after: float, request_id: Optional[str] = None
    ) -> "RateLimitErrorResponse":
        """Body for a Discord rate limit, with the wait rounded up to whole seconds."""
        seconds = max(1, math.ceil(retry_after))
        return cls(
            error="Discord API rate limit exceeded",
            type="rate_limit_error",
            timestamp=datetime.now(timezone.utc),
            request_id=request_id,
            retryAfter=seconds,
            message=f"Please wait {seconds} seconds before trying again",
        )


# Staff roster

class RoleChangeRequest(CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    role_name: Rank = Field(..., alias="roleName")


class RemoveRoleRequest(RoleChangeRequest):
    reason: Optional[str] = None


class ChangeRankRequest(CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    from_rank: Rank = Field(..., alias="fromRank")
    to_rank: Rank = Field(..., alias="toRank")


class UpdateStaffRequest(CamelModel):
    discord_id: str = Field(..., alias="discordId", min_length=1)
    playfab_id: Optional[str] = Field(None, alias="playfabId")
    recruitment_date: Optional[date] = Field(None, alias="recruitmentDate")
    status: StaffStatus = "Active"

    @field_validator("recruitment_date", "playfab_id", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _blank_to_none(value)

    @field_validator("status", mode="before")
    @classmethod
    def blank_status_is_active(cls, value):
        return _blank_to_none(value) or "Active"


class PastStaffCreate(CamelModel):
    discord_id: str = Field(..., alias="discordId", min_length=1)
    username: str = Field(..., min_length=1)
    display_name: str = Field(..., alias="displayName", min_length=1)
    rank: str = Field(..., min_length=1)
    playfab_id: Optional[str] = Field(None, alias="playfabId")
    recruitment_date: Optional[date] = Field(None, alias="recruitmentDate")
    removal_reason: Optional[str] = Field(None, alias="removalReason")

    @field_validator("recruitment_date", "playfab_id", "removal_reason", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _blank_to_none(value)


class PastStaffUpdate(CamelModel):
    discord_id: str = Field(..., alias="discordId", min_length=1)
    username: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")
    rank: Optional[str] = None
    playfab_id: Optional[str] = Field(None, alias="playfabId")
    recruitment_date: Optional[date] = Field(None, alias="recruitmentDate")
    removal_reason: Optional[str] = Field(None, alias="removalReason")

    @field_validator("recruitment_date", "playfab_id", "removal_reason", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _blank_to_none(value)

    # Omitted means unchanged; these columns cannot be cleared.
    @field_validator("username", "display_name", "rank", mode="before")
    @classmethod
    def required_when_sent(cls, value):
        if _blank_to_none(value) is None:
            raise ValueError("must not be empty when provided")
        return value


class PastStaffDelete(CamelModel):
    discord_id: str = Field(..., alias="discordId", min_length=1)


class SuccessResponse(BaseModel):
    success: bool = True
    message: str


# Staff documents

class DocumentCreate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    access_level: Optional[str] = None


class DocumentUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    access_level: Optional[str] = None
    is_published: Optional[bool] = None


class DocumentResponse(BaseModel):
    id: int
    title: str
    content: str
    category: str
    access_level: AccessLevel
    author_name: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    is_published: bool
