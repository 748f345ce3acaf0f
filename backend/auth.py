# auth.py — Token verification & role-based access for the Exprsn core
# Features:
# - JWT access tokens minted by the identity service (verified here only)
# - 5-tier RBAC (super_admin, org_admin, auditor, power_user, user)
# - Fine-grained permission scopes
# - bcrypt hashing for stored credential secrets

import os
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, UserRole

logger = logging.getLogger("exprsn.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or len(SECRET_KEY) < 32:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

security = HTTPBearer()


# ============================================================
# ROLE PERMISSIONS
# ============================================================

ROLE_PERMISSIONS = {
    UserRole.SUPER_ADMIN: [
        "artifacts:read", "artifacts:write",
        "repos:read", "repos:write", "repos:admin",
        "credentials:write",
        "reports:read", "reports:write", "reports:admin",
        "migrations:read", "migrations:write", "migrations:execute",
        "projects:read", "projects:write",
        "documents:read", "documents:write",
        "admin:audit",
    ],
    UserRole.ORG_ADMIN: [
        "artifacts:read", "artifacts:write",
        "repos:read", "repos:write", "repos:admin",
        "credentials:write",
        "reports:read", "reports:write", "reports:admin",
        "migrations:read", "migrations:write", "migrations:execute",
        "projects:read", "projects:write",
        "documents:read", "documents:write",
        "admin:audit",
    ],
    UserRole.AUDITOR: [
        "artifacts:read",
        "repos:read",
        "reports:read",
        "migrations:read",
        "projects:read",
        "documents:read",
        "admin:audit",
    ],
    UserRole.POWER_USER: [
        "artifacts:read", "artifacts:write",
        "repos:read", "repos:write",
        "credentials:write",
        "reports:read", "reports:write",
        "migrations:read",
        "projects:read", "projects:write",
        "documents:read", "documents:write",
    ],
    UserRole.USER: [
        "artifacts:read", "artifacts:write",
        "repos:read", "repos:write",
        "credentials:write",
        "reports:read", "reports:write",
        "projects:read", "projects:write",
        "documents:read", "documents:write",
    ],
}

ADMIN_ROLES = {UserRole.SUPER_ADMIN, UserRole.ORG_ADMIN}


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str
    role: str
    is_active: bool
    permissions: List[str] = []

    @property
    def is_admin(self) -> bool:
        return UserRole(self.role) in ADMIN_ROLES


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Token and secret primitives"""

    @staticmethod
    def hash_secret(secret: str) -> str:
        salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
        return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_secret(secret: str, secret_hash: str) -> bool:
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
        except ValueError:
            return False

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def get_user_permissions(role: UserRole) -> List[str]:
        try:
            return ROLE_PERMISSIONS.get(UserRole(role), ROLE_PERMISSIONS[UserRole.USER])
        except (ValueError, KeyError):
            return ROLE_PERMISSIONS[UserRole.USER]


def to_current_user(user: User) -> CurrentUser:
    role = user.role.value if isinstance(user.role, UserRole) else user.role
    return CurrentUser(
        id=user.id,
        email=user.email,
        display_name=user.display_name or "",
        role=role,
        is_active=bool(user.is_active),
        permissions=AuthService.get_user_permissions(role),
    )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user or not user.is_active or user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return to_current_user(user)


def require_permission(*scopes: str):
    """Dependency factory: require user to have specific permission scopes"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        for scope in scopes:
            if scope not in user.permissions:
                raise HTTPException(
                    status_code=403,
                    detail=f"Missing required permission: {scope}",
                )
        return user
    return _check
