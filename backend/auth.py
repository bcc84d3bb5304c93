from jose import JWTError, jwt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Set
import os
from models import AdminRole, Permission, CUSTOMER_ROLE

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))

ROLE_HIERARCHY: Dict[str, int] = {
    AdminRole.SUPER_ADMIN.value: 5,
    AdminRole.ADMIN.value: 4,
    AdminRole.MANAGER.value: 3,
    AdminRole.STAFF.value: 2,
    AdminRole.VIEWER.value: 1,
    CUSTOMER_ROLE: 0,
}

_VIEW_PERMISSIONS = {
    Permission.USERS_VIEW,
    Permission.BUILDS_VIEW,
    Permission.ORDERS_VIEW,
    Permission.ANALYTICS_VIEW,
}

ROLE_PERMISSIONS: Dict[str, Set[Permission]] = {
    AdminRole.SUPER_ADMIN.value: set(Permission),
    AdminRole.ADMIN.value: set(Permission) - {Permission.SYSTEM_ADMIN},
    AdminRole.MANAGER.value: {
        Permission.USERS_VIEW,
        Permission.BUILDS_VIEW,
        Permission.BUILDS_EDIT,
        Permission.ORDERS_VIEW,
        Permission.ORDERS_EDIT,
        Permission.MODELS_EDIT,
        Permission.ANALYTICS_VIEW,
        Permission.FINANCIAL_VIEW,
    },
    AdminRole.STAFF.value: {
        Permission.USERS_VIEW,
        Permission.BUILDS_VIEW,
        Permission.BUILDS_EDIT,
        Permission.ORDERS_VIEW,
    },
    AdminRole.VIEWER.value: set(_VIEW_PERMISSIONS),
}


def _signing_key() -> tuple[str, str]:
    """Session tokens are RS256 when a Clerk public key is configured, else the shared secret."""
    clerk_key = (os.getenv("CLERK_JWT_KEY") or "").strip()
    if clerk_key:
        return clerk_key, "RS256"
    return JWT_SECRET, JWT_ALGORITHM


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token (development and tests)."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT token."""
    key, algorithm = _signing_key()
    try:
        payload = jwt.decode(
            token, key, algorithms=[algorithm], options={"verify_aud": False}
        )
        return payload
    except JWTError:
        return None


def admin_emails() -> Set[str]:
    raw = os.getenv("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def resolve_role(payload: Dict) -> str:
    """Role claim, falling back to Clerk public metadata and the admin email allow-list."""
    role = payload.get("role")
    if not role:
        for key in ("metadata", "public_metadata"):
            meta = payload.get(key)
            if isinstance(meta, dict) and meta.get("role"):
                role = meta["role"]
                break
    if role in ROLE_HIERARCHY:
        return role
    email = (payload.get("email") or "").lower()
    if email and email in admin_emails():
        return AdminRole.ADMIN.value
    return CUSTOMER_ROLE


def is_admin_role(role: Optional[str]) -> bool:
    return check_rbac(role or "", AdminRole.VIEWER.value)


def has_permission(role: Optional[str], permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role or "", set())


def check_rbac(user_role: str, required_role: str) -> bool:
    """Check if user has required role."""
    return ROLE_HIERARCHY.get(user_role, 0) >= ROLE_HIERARCHY.get(required_role, 0)
