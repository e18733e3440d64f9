"""
Mail account settings endpoints

The IMAP password is encrypted with the server master key before it is
stored and is never returned.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from mailsync.api.auth import CAP_ACCOUNT, Principal, require
from mailsync.api.schemas import AccountResponse, ConfigStatusResponse, SaveAccountRequest
from mailsync.core.database import get_db
from mailsync.core.errors import describe_error
from mailsync.core.sync.service import SyncService, config_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/account", tags=["account"])


@router.put("", response_model=AccountResponse)
def save_account(
    request: SaveAccountRequest,
    principal: Principal = Depends(require(CAP_ACCOUNT)),
    db: Session = Depends(get_db),
):
    """
    Create or replace the caller's mail account.

    Missing email address, username or password returns 400
    {"error": "All fields are required ..."}.
    """
    try:
        account = SyncService(db).save_account(
            principal.owner_id,
            request.email_address,
            request.imap_username,
            request.imap_password,
            imap_host=request.imap_host,
            imap_port=request.imap_port,
        )
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        db.rollback()
        error = describe_error(e)
        logger.error(f"Failed to save account for owner {principal.owner_id}: {error}")
        return JSONResponse(status_code=500, content={"error": error})

    logger.info(f"Saved mail account for owner {principal.owner_id}")
    return AccountResponse.model_validate(account)


@router.get("", response_model=Optional[AccountResponse])
def get_account(
    principal: Principal = Depends(require(CAP_ACCOUNT)),
    db: Session = Depends(get_db),
):
    """The caller's account without secrets, or null when none is saved"""
    return SyncService(db).get_account(principal.owner_id)


@router.get("/config-status", response_model=ConfigStatusResponse)
async def get_config_status(principal: Principal = Depends(require(CAP_ACCOUNT, owner_required=False))):
    return ConfigStatusResponse(status=config_status())
