"""Caller identity: bearer token -> user -> active tenant membership."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dipsy.core.config import get_settings
from dipsy.core.errors import NoActiveTenant, Unauthenticated
from dipsy.core.logging import logger
from dipsy.services.tms_store import TmsStore, tms_store


security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    tenant_id: str
    role: str


def _parse_user_tokens(raw: str) -> Dict[str, str]:
    """Parse `token:user_id` comma-separated values from env."""
    mapping: Dict[str, str] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        if ":" not in item:
            logger.warning("Ignoring malformed API token mapping entry", entry=item)
            continue
        token, user_id = item.split(":", 1)
        token = token.strip()
        user_id = user_id.strip()
        if token and user_id:
            mapping[token] = user_id
    return mapping


def resolve_identity(token: Optional[str], store: TmsStore | None = None) -> CallerIdentity:
    """Pure lookup; raises Unauthenticated or NoActiveTenant."""
    store = store or tms_store
    if not token or not token.strip():
        raise Unauthenticated("Bearer token required")

    user_id = _parse_user_tokens(get_settings().api_tokens).get(token.strip())
    if not user_id:
        raise Unauthenticated("Invalid bearer token")

    membership = store.active_membership(user_id)
    if not membership:
        raise NoActiveTenant(f"User {user_id} has no active organization")

    return CallerIdentity(user_id=user_id, tenant_id=membership["tenant_id"], role=membership["role"])


def get_caller_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> CallerIdentity:
    """FastAPI dependency; the tenant always comes from the membership, never the header."""
    try:
        identity = resolve_identity(credentials.credentials if credentials else None)
    except Unauthenticated as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except NoActiveTenant as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.message) from exc

    if x_tenant_id and x_tenant_id.strip() and x_tenant_id.strip() != identity.tenant_id:
        logger.warning(
            "Rejected tenant header mismatch",
            user_id=identity.user_id,
            tenant_id=identity.tenant_id,
            requested_tenant=x_tenant_id.strip(),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant mismatch",
        )
    return identity


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(identity: CallerIdentity = Depends(get_caller_identity)) -> CallerIdentity:
        if identity.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{identity.role}' not permitted for this operation",
            )
        return identity

    return _guard
