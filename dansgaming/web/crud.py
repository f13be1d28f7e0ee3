"""Database operations for the staff portal.

All operations are async and use SQLAlchemy 2.0 syntax. Each operations
class is bound to a single session for the lifetime of a request.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone, date
from typing import Optional, List, Dict, Iterable, Tuple

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from dansgaming.web.models import User, PastStaff, StaffDocument, ACCESS_LEVELS
from dansgaming.web.roles import (
    MANAGEMENT_LEVEL,
    access_level_for_level,
    level_for_rank,
)

logger = logging.getLogger(__name__)


class DatabaseOperationError(Exception):
    """Base exception for database operations."""
    pass


class NotFoundError(DatabaseOperationError):
    """Raised when a requested resource is not found."""
    pass


class ConflictError(DatabaseOperationError):
    """Raised when a database constraint or live state check is violated."""
    pass


class ValidationError(Exception):
    """Raised when input fails a business rule."""
    pass


class PermissionDeniedError(Exception):
    """Raised when the caller's permission level is insufficient."""
    pass


class UserOperations:
    """Database operations for site accounts and staff metadata."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[User]:
        try:
            result = await self.session.execute(select(User).where(User.id == user_id))
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get user: {e}") from e

    async def get_by_discord_id(self, discord_id: str) -> Optional[User]:
        try:
            result = await self.session.execute(
                select(User).where(User.discord_id == discord_id)
            )
            return result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get user by Discord id: {e}") from e

    async def get_by_discord_ids(self, discord_ids: Iterable[str]) -> Dict[str, User]:
        """Fetch users for many Discord ids in one query.

        Args:
            discord_ids: Discord user snowflake IDs

        Returns:
            Mapping of Discord id to user, for the ids that have a row
        """
        ids = list(discord_ids)
        if not ids:
            return {}
        try:
            result = await self.session.execute(
                select(User).where(User.discord_id.in_(ids))
            )
            return {user.discord_id: user for user in result.scalars().all()}
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get users by Discord id: {e}") from e

    async def record_discord_login(
        self,
        discord_id: str,
        username: str,
        avatar_url: Optional[str] = None
    ) -> User:
        """Create or refresh the account behind a Discord OAuth login.

        Existing accounts are marked staff with a fresh avatar and
        ``last_login``; new ones are created as staff accounts without a
        password hash.

        Args:
            discord_id: Discord user snowflake ID
            username: Discord username
            avatar_url: CDN avatar URL, if the user has an avatar

        Returns:
            User: The logged-in account
        """
        now = datetime.now(timezone.utc)
        try:
            user = await self.get_by_discord_id(discord_id)
            if user is None:
                user = User(
                    discord_id=discord_id,
                    username=username,
                    email=f"{username}@discord.com",
                    role="staff",
                    avatar_url=avatar_url,
                    last_login=now,
                )
                self.session.add(user)
                logger.info(f"Created staff account for Discord user {discord_id}")
            else:
                user.role = "staff"
                user.avatar_url = avatar_url
                user.last_login = now
                user.updated_at = now

            await self.session.commit()
            await self.session.refresh(user)
            return user

        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError(f"Account for Discord user {discord_id} already exists") from e
        except DatabaseOperationError:
            raise
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to record Discord login: {e}") from e

    async def update_staff_metadata(
        self,
        discord_id: str,
        playfab_id: Optional[str] = None,
        recruitment_date: Optional[date] = None,
        status: Optional[str] = None,
    ) -> Tuple[User, bool]:
        """Upsert staff metadata keyed by Discord id.

        When no row exists a minimal placeholder account is created with
        no password hash. This is the only path that creates a user who has
        not logged in through Discord.

        Returns:
            Tuple of the user and whether it was created
        """
        try:
            user = await self.get_by_discord_id(discord_id)
            created = user is None
            if created:
                logger.warning(
                    f"Creating placeholder account for staff member {discord_id} without Discord login"
                )
                user = User(
                    discord_id=discord_id,
                    username=f"discord_{discord_id}",
                    email=f"discord_{discord_id}@discord.com",
                    role="staff",
                    password_hash=None,
                )
                self.session.add(user)

            user.playfab_id = playfab_id or None
            user.recruitment_date = recruitment_date
            user.status = status or "Active"
            user.updated_at = datetime.now(timezone.utc)

            await self.session.commit()
            await self.session.refresh(user)
            return user, created

        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError(f"Conflicting account for Discord user {discord_id}") from e
        except DatabaseOperationError:
            raise
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to update staff metadata: {e}") from e


class PastStaffOperations:
    """Database operations for the past-staff archive."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_past_staff(self) -> List[PastStaff]:
        """All archive records, newest removal first."""
        try:
            result = await self.session.execute(
                select(PastStaff).order_by(PastStaff.removal_date.desc(), PastStaff.id.desc())
            )
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list past staff: {e}") from e

    async def add_past_staff(
        self,
        discord_id: str,
        username: str,
        display_name: str,
        rank: str,
        playfab_id: Optional[str] = None,
        recruitment_date: Optional[date] = None,
        removal_reason: Optional[str] = None,
        removal_date: Optional[datetime] = None,
    ) -> PastStaff:
        """Insert an archive record.

        The removal reason is not enforced here; the roster's retire flow
        requires it.
        """
        try:
            record = PastStaff(
                discord_id=discord_id,
                username=username,
                display_name=display_name,
                rank=rank,
                playfab_id=playfab_id or None,
                recruitment_date=recruitment_date,
                removal_reason=removal_reason or None,
                removal_date=removal_date,
            )
            self.session.add(record)
            await self.session.commit()
            await self.session.refresh(record)
            return record
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to add past staff: {e}") from e

    async def update_past_staff(self, discord_id: str, **updates) -> int:
        """Update every archive record for ``discord_id``.

        Returns:
            Number of records updated

        Raises:
            NotFoundError: If no record exists for the Discord id
        """
        try:
            result = await self.session.execute(
                select(PastStaff).where(PastStaff.discord_id == discord_id)
            )
            records = list(result.scalars().all())
            if not records:
                raise NotFoundError(f"Past staff member not found: {discord_id}")

            for record in records:
                for field, value in updates.items():
                    if hasattr(record, field):
                        setattr(record, field, value)

            await self.session.commit()
            return len(records)

        except NotFoundError:
            raise
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to update past staff: {e}") from e

    async def remove_past_staff(self, discord_id: str) -> int:
        """Delete every archive record for ``discord_id``.

        Raises:
            NotFoundError: If no record exists for the Discord id
        """
        try:
            result = await self.session.execute(
                delete(PastStaff).where(PastStaff.discord_id == discord_id)
            )
            if not result.rowcount:
                await self.session.rollback()
                raise NotFoundError(f"Past staff member not found: {discord_id}")
            await self.session.commit()
            return result.rowcount

        except NotFoundError:
            raise
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to remove past staff: {e}") from e


def required_level(access_level: str) -> int:
    """Minimum permission level needed to read a document."""
    try:
        return level_for_rank(access_level)
    except ValueError:
        return 1


def _validate_access_level(access_level: Optional[str]) -> None:
    if access_level is not None and access_level not in ACCESS_LEVELS:
        raise ValidationError("Invalid access level")


class StaffDocumentOperations:
    """Staff knowledge base, gated by the caller's permission level.

    Levels follow the rank hierarchy: Admin=1, Management=2, Founder=3.
    A document is visible when it is published and its access level's
    required level is at most the caller's level.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_documents(self, caller_level: int) -> List[StaffDocument]:
        visible = [level for level in ACCESS_LEVELS if required_level(level) <= caller_level]
        if not visible:
            return []
        try:
            result = await self.session.execute(
                select(StaffDocument)
                .where(
                    StaffDocument.is_published == True,
                    StaffDocument.access_level.in_(visible),
                )
                .order_by(StaffDocument.category, StaffDocument.title)
            )
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list documents: {e}") from e

    async def _get(self, document_id: int) -> StaffDocument:
        try:
            result = await self.session.execute(
                select(StaffDocument).where(StaffDocument.id == document_id)
            )
            document = result.scalar_one_or_none()
        except Exception as e:
            raise DatabaseOperationError(f"Failed to get document: {e}") from e

        if document is None:
            raise NotFoundError("Document not found")
        return document

    async def get_document(self, document_id: int, caller_level: int) -> StaffDocument:
        """Fetch a published document the caller may read.

        Raises:
            NotFoundError: If the document is absent or unpublished
            PermissionDeniedError: If the caller's level is too low
        """
        document = await self._get(document_id)
        if not document.is_published:
            raise NotFoundError("Document not found")
        if caller_level < required_level(document.access_level):
            raise PermissionDeniedError("Insufficient permissions to view this document")
        return document

    async def create_document(
        self,
        title: str,
        content: str,
        caller_level: int,
        author_id: str,
        author_name: str,
        category: Optional[str] = None,
        access_level: Optional[str] = None,
    ) -> StaffDocument:
        """Create a document. Requires Management or higher.

        When no access level is given, the document is restricted to the
        creator's own rank.
        """
        if caller_level < MANAGEMENT_LEVEL:
            raise PermissionDeniedError("Management level or higher required to create documents")
        if not title or not content:
            raise ValidationError("Title and content are required")
        _validate_access_level(access_level)

        try:
            document = StaffDocument(
                title=title,
                content=content,
                category=category or "general",
                access_level=access_level or access_level_for_level(caller_level).value,
                author_id=author_id,
                author_name=author_name or "Unknown",
            )
            self.session.add(document)
            await self.session.commit()
            await self.session.refresh(document)
            logger.info(f"Document {document.id} created by {author_name}")
            return document
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to create document: {e}") from e

    async def update_document(
        self,
        document_id: int,
        caller_level: int,
        caller_id: str,
        **updates,
    ) -> StaffDocument:
        """Update a document. Allowed for Management+ or the author.

        Changing ``access_level`` always requires Management or higher.
        ``None`` values leave the field unchanged.
        """
        document = await self._get(document_id)

        is_author = document.author_id == caller_id
        if caller_level < MANAGEMENT_LEVEL and not is_author:
            raise PermissionDeniedError("Insufficient permissions to edit this document")

        access_level = updates.get("access_level")
        if access_level is not None:
            _validate_access_level(access_level)
            if caller_level < MANAGEMENT_LEVEL:
                raise PermissionDeniedError(
                    "Management level or higher required to change access levels"
                )

        try:
            for field in ("title", "content", "category", "access_level", "is_published"):
                value = updates.get(field)
                if value is not None and value != "":
                    setattr(document, field, value)
            document.updated_at = datetime.now(timezone.utc)

            await self.session.commit()
            await self.session.refresh(document)
            return document
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to update document: {e}") from e

    async def delete_document(self, document_id: int, caller_level: int, caller_id: str) -> None:
        """Delete a document. Allowed for Management+ or the author."""
        document = await self._get(document_id)

        if caller_level < MANAGEMENT_LEVEL and document.author_id != caller_id:
            raise PermissionDeniedError("Insufficient permissions to delete this document")

        try:
            await self.session.delete(document)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            raise DatabaseOperationError(f"Failed to delete document: {e}") from e

    async def list_categories(self) -> List[str]:
        """Distinct categories among published documents."""
        try:
            result = await self.session.execute(
                select(StaffDocument.category)
                .where(StaffDocument.is_published == True)
                .distinct()
                .order_by(StaffDocument.category)
            )
            return list(result.scalars().all())
        except Exception as e:
            raise DatabaseOperationError(f"Failed to list categories: {e}") from e
