import logging
from typing import Any

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings
from .security_utils import verify_jwt_token

logger = logging.getLogger(__name__)

security = HTTPBearer()


class OwnerContext:
    """Authenticated salon owner and the organizations the token grants"""

    def __init__(self, user_id: str, org_ids: set[str]):
        self.user_id = user_id
        self.org_ids = org_ids

    def can_access(self, org_id: str) -> bool:
        return org_id in self.org_ids


def owner_from_claims(claims: dict[str, Any]) -> OwnerContext:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    org_ids = set(claims.get("org_ids") or [])
    if claims.get("org_id"):
        org_ids.add(claims["org_id"])
    return OwnerContext(user_id=str(user_id), org_ids={str(o) for o in org_ids})


async def get_current_owner(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> OwnerContext:
    """Resolve the bearer token to an owner; 401 on any verification failure"""
    claims = verify_jwt_token(credentials.credentials, settings.secret_key)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return owner_from_claims(claims)


def require_org_access(owner: OwnerContext, org_id: str) -> None:
    if not owner.can_access(org_id):
        logger.warning(f"🚫 User {owner.user_id} denied access to org {org_id}")
        raise HTTPException(status_code=403, detail="Not allowed for this organization")
