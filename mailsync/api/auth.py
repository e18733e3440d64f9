"""
API Key Authentication and capability checks for FastAPI

Every route declares the capability it needs through require():

    X-API-Key == API_KEY        -> sync, account, emails
    X-API-Key == ADMIN_API_KEY  -> the above plus sync:all

The caller's owner identity comes from the X-Owner-Id header.
"""
import re
import secrets
from dataclasses import dataclass
from typing import FrozenSet, Optional
from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader
import logging

from mailsync.core.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_NAME = "X-API-Key"
OWNER_HEADER_NAME = "X-Owner-Id"

CAP_SYNC = "sync"
CAP_ACCOUNT = "account"
CAP_EMAILS = "emails"
CAP_SYNC_ALL = "sync:all"

OWNER_CAPABILITIES: FrozenSet[str] = frozenset({CAP_SYNC, CAP_ACCOUNT, CAP_EMAILS})
ADMIN_CAPABILITIES: FrozenSet[str] = OWNER_CAPABILITIES | {CAP_SYNC_ALL}

_OWNER_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._@+-]{0,99}$')

api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    owner_id: Optional[str]
    capabilities: FrozenSet[str]

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


def _matches(candidate: str, expected: Optional[str]) -> bool:
    # Use constant-time comparison to prevent timing attacks
    return bool(expected) and secrets.compare_digest(candidate.encode(), expected.encode())


def capabilities_for_key(api_key: str) -> FrozenSet[str]:
    """Capabilities granted by an API key (empty if the key is unknown)"""
    settings = get_settings()
    if _matches(api_key, settings.admin_api_key):
        return ADMIN_CAPABILITIES
    if _matches(api_key, settings.api_key):
        return OWNER_CAPABILITIES
    return frozenset()


async def get_principal(
    api_key: Optional[str] = Security(api_key_header),
    owner_id: Optional[str] = Header(None, alias=OWNER_HEADER_NAME),
) -> Principal:
    """
    Verify the API key and read the owner identity.

    Raises:
        HTTPException: 500 if no key is configured, 401 if missing, 403 if invalid,
            400 if the owner header is malformed
    """
    settings = get_settings()
    if not settings.api_key and not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API_KEY not configured on server"
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing API Key. Include '{API_KEY_NAME}' header."
        )

    capabilities = capabilities_for_key(api_key)
    if not capabilities:
        logger.warning("Rejected request with invalid API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API Key"
        )

    if owner_id is not None:
        owner_id = owner_id.strip()
        if not _OWNER_ID_PATTERN.match(owner_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid {OWNER_HEADER_NAME} header"
            )

    return Principal(owner_id=owner_id or None, capabilities=capabilities)


def require(capability: str, owner_required: bool = True):
    """
    Dependency factory: the caller must hold `capability` (and, unless
    owner_required is False, identify an owner).
    """
    async def check(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.can(capability):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing capability '{capability}'"
            )
        if owner_required and not principal.owner_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing {OWNER_HEADER_NAME} header"
            )
        return principal

    return check
