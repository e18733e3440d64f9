"""
Ingested email endpoints (read-only)
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from mailsync.api.auth import CAP_EMAILS, Principal, require
from mailsync.api.schemas import EmailDetailResponse, EmailListResponse, EmailResponse
from mailsync.core.database import get_db
from mailsync.core.database.repository import MessageRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emails", tags=["emails"])


@router.get("", response_model=EmailListResponse)
async def list_emails(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=100, description="Items per page"),
    mailbox: Optional[str] = Query(None, description="Filter by mailbox"),
    principal: Principal = Depends(require(CAP_EMAILS)),
    db: Session = Depends(get_db),
):
    """
    List the caller's ingested emails, most recent first.

    **Filters:**
    - mailbox: INBOX, Sent, etc.
    """
    offset = (page - 1) * page_size
    emails, total = MessageRepository(db).list_messages(
        principal.owner_id, mailbox=mailbox, limit=page_size, offset=offset
    )

    total_pages = (total + page_size - 1) // page_size

    return EmailListResponse(
        emails=[EmailResponse.model_validate(email) for email in emails],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.get("/{email_id}", response_model=EmailDetailResponse)
async def get_email(
    email_id: str,
    principal: Principal = Depends(require(CAP_EMAILS)),
    db: Session = Depends(get_db),
):
    """Full email with bodies and attachment records"""
    email = MessageRepository(db).get_message(principal.owner_id, email_id)
    if not email:
        raise HTTPException(status_code=404, detail="Email not found")
    return EmailDetailResponse.model_validate(email)
