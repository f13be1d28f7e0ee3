"""Database models for the DansGaming staff portal."""

from __future__ import annotations

from datetime import datetime, timezone, date
from typing import Any, Dict, Optional

from sqlalchemy import Boolean
from sqlalchemy import DateTime, Date
from sqlalchemy import Index, CheckConstraint
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.sql import func

from dansgaming.shared.database import Base


STAFF_STATUSES = ("Active", "Exempt", "Inactive", "On Leave")
USER_ROLES = ("user", "staff", "admin")
ACCESS_LEVELS = ("Admin", "Management", "Founder")


def _isoformat(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class User(Base):
    """Site account, optionally linked to a Discord identity.

    Rows created through Discord OAuth (or as metadata placeholders for
    staff who never logged in) carry no password hash. Staff metadata lives
    here and survives the loss of a Discord staff role until an admin
    archives it.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        doc="Internal user id"
    )

    # Identity
    discord_id: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        unique=True,
        doc="Discord user snowflake ID (null for non-Discord accounts)"
    )
    username: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Display username"
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="Contact email"
    )
    password_hash: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="Password hash for local accounts; null for Discord accounts"
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="user",
        doc="Coarse account category: user, staff or admin"
    )
    avatar_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        doc="Avatar image URL"
    )

    # Staff metadata
    playfab_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="PlayFab player id"
    )
    steam64_id: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        doc="Steam64 id"
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Free-form staff notes"
    )
    recruitment_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        doc="Date the member joined staff"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="Active",
        doc="Staff status: Active, Exempt, Inactive or On Leave"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        doc="Timestamp when the account was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        doc="Timestamp when the account was last modified"
    )
    last_login: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Timestamp of the last successful login"
    )

    __table_args__ = (
        CheckConstraint(
            "role IN ('user', 'staff', 'admin')",
            name="ck_users_role"
        ),
        CheckConstraint(
            "status IN ('Active', 'Exempt', 'Inactive', 'On Leave')",
            name="ck_users_status"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize User with default role, status and timestamps."""
        now = datetime.now(timezone.utc)
        kwargs.setdefault('role', 'user')
        kwargs.setdefault('status', 'Active')
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        super().__init__(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Public account fields, as returned by the verify endpoint."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "avatar_url": self.avatar_url,
            "discord_id": self.discord_id,
        }

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}', discord_id={self.discord_id})>"


class PastStaff(Base):
    """Archive of a staff member's removal.

    A snapshot taken when someone is retired: the rank they held, their
    metadata at the time, and why they were removed. Independent of the
    ``users`` row. ``discord_id`` is intentionally not unique because the
    same person can be retired more than once over the years.
    """

    __tablename__ = "past_staff"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        doc="Archive record id"
    )
    discord_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="Discord user snowflake ID"
    )
    username: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Discord username at removal"
    )
    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Guild display name at removal"
    )
    rank: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Rank held at removal"
    )
    playfab_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="PlayFab player id"
    )
    recruitment_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        doc="Date the member joined staff"
    )
    removal_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        doc="Timestamp of removal"
    )
    removal_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Why the member was removed"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        doc="Timestamp when the record was created"
    )

    __table_args__ = (
        Index("ix_past_staff_discord_id", "discord_id"),
        Index("ix_past_staff_removal_date", "removal_date"),
    )

    def __init__(self, **kwargs):
        """Initialize PastStaff with removal time defaulting to now."""
        now = datetime.now(timezone.utc)
        if kwargs.get('removal_date') is None:
            kwargs['removal_date'] = now
        kwargs.setdefault('created_at', now)
        super().__init__(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.id,
            "id": self.discord_id,
            "username": self.username,
            "name": self.display_name,
            "rank": self.rank,
            "playfabID": self.playfab_id,
            "recruitmentDate": _isoformat(self.recruitment_date),
            "removalDate": _isoformat(self.removal_date),
            "removalReason": self.removal_reason,
        }

    def __repr__(self) -> str:
        return f"<PastStaff(discord_id={self.discord_id}, rank='{self.rank}')>"


class StaffDocument(Base):
    """Staff knowledge-base article.

    ``access_level`` is the minimum rank able to view the document. Only
    published documents are ever listed.
    """

    __tablename__ = "staff_documents"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        doc="Document id"
    )
    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Document title"
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="Rich HTML content"
    )
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="general",
        doc="Free-text category tag"
    )
    access_level: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="Admin",
        doc="Minimum rank able to view: Admin, Management or Founder"
    )
    author_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        doc="Author's Discord id, or internal user id for non-Discord accounts"
    )
    author_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Author's username at creation"
    )
    is_published: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether the document is visible to staff"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        doc="Timestamp when the document was created"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        doc="Timestamp when the document was last updated"
    )

    __table_args__ = (
        Index("ix_staff_documents_published", "is_published", "access_level"),
        Index("ix_staff_documents_category", "category"),
        CheckConstraint(
            "access_level IN ('Admin', 'Management', 'Founder')",
            name="ck_staff_documents_access_level"
        ),
    )

    def __init__(self, **kwargs):
        """Initialize StaffDocument with defaults and timestamps."""
        now = datetime.now(timezone.utc)
        kwargs.setdefault('category', 'general')
        kwargs.setdefault('access_level', 'Admin')
        kwargs.setdefault('is_published', True)
        kwargs.setdefault('created_at', now)
        kwargs.setdefault('updated_at', now)
        super().__init__(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "access_level": self.access_level,
            "author_name": self.author_name,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
            "is_published": self.is_published,
        }

    def __repr__(self) -> str:
        status = "published" if self.is_published else "draft"
        return f"<StaffDocument(title='{self.title}', access_level='{self.access_level}', status='{status}')>"
