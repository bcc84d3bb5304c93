from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, resolve_role, is_admin_role, has_permission
from models import Permission

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from the session JWT."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not payload.get("sub"):
        return None

    role = resolve_role(payload)
    return {
        "user_id": payload["sub"],
        "email": payload.get("email"),
        "name": payload.get("name"),
        "role": role,
        "is_admin": is_admin_role(role),
    }

async def optional_user(request: Request) -> Optional[dict]:
    """Authentication is optional (analytics ingestion, public catalog)."""
    return await get_current_user(request)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_admin(request: Request) -> dict:
    """Require any admin role."""
    user = await require_auth(request)
    if not user["is_admin"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return user

def require_permission(permission: Permission):
    """Dependency factory: admin with a specific permission."""
    async def _guard(request: Request) -> dict:
        user = await require_admin(request)
        if not has_permission(user["role"], permission):
            logger.warning(
                "Permission denied user=%s role=%s permission=%s path=%s",
                user["user_id"], user["role"], permission.value, request.url.path,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return user
    return _guard

def require_any_permission(*permissions: Permission):
    """Dependency factory: admin holding at least one of the permissions."""
    async def _guard(request: Request) -> dict:
        user = await require_admin(request)
        if not any(has_permission(user["role"], p) for p in permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return user
    return _guard

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_admin(request)
