"""Staff knowledge-base API router.

Every endpoint resolves the caller's live permission level; documents are
filtered and guarded against it by ``StaffDocumentOperations``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from dansgaming.shared.database import get_db_session
from dansgaming.web.api.dependencies import get_staff_identity
from dansgaming.web.api.schemas import (
    DocumentCreate,
    DocumentResponse,
    DocumentUpdate,
    SuccessResponse,
)
from dansgaming.web.crud import StaffDocumentOperations
from dansgaming.web.security import StaffIdentity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/staff-documents", tags=["Staff Documents"])


@router.get("", response_model=List[DocumentResponse])
async def list_documents(
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> List[Dict[str, Any]]:
    """Published documents the caller's rank may read, by category then title."""
    documents = await StaffDocumentOperations(session).list_documents(identity.permission_level)
    return [document.to_dict() for document in documents]


# Declared before /{document_id} so "categories" is not parsed as an id
@router.get("/categories/list", response_model=List[str])
async def list_categories(
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> List[str]:
    return await StaffDocumentOperations(session).list_categories()


@router.get("/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> Dict[str, Any]:
    document = await StaffDocumentOperations(session).get_document(
        document_id, identity.permission_level
    )
    return document.to_dict()


@router.post("")
async def create_document(
    body: DocumentCreate,
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> Dict[str, Any]:
    """Create a document. Management rank or higher.

    Without an explicit ``access_level`` the document is restricted to the
    creator's own rank.
    """
    document = await StaffDocumentOperations(session).create_document(
        title=body.title,
        content=body.content,
        caller_level=identity.permission_level,
        author_id=identity.author_id,
        author_name=identity.username,
        category=body.category,
        access_level=body.access_level,
    )
    return {
        "success": True,
        "message": "Document created successfully",
        "documentId": document.id,
    }


@router.put("/{document_id}", response_model=SuccessResponse)
async def update_document(
    document_id: int,
    body: DocumentUpdate,
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> SuccessResponse:
    await StaffDocumentOperations(session).update_document(
        document_id,
        identity.permission_level,
        identity.author_id,
        **body.model_dump(exclude_unset=True),
    )
    logger.info(f"Document {document_id} updated by {identity.username}")
    return SuccessResponse(message="Document updated successfully")


@router.delete("/{document_id}", response_model=SuccessResponse)
async def delete_document(
    document_id: int,
    session: AsyncSession = Depends(get_db_session),
    identity: StaffIdentity = Depends(get_staff_identity),
) -> SuccessResponse:
    await StaffDocumentOperations(session).delete_document(
        document_id, identity.permission_level, identity.author_id
    )
    logger.info(f"Document {document_id} deleted by {identity.username}")
    return SuccessResponse(message="Document deleted successfully")
