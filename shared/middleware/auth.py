"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The bearer JWT is validated here and resolved to an explicit Actor that
every core operation receives.
"""

import uuid
from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config.database import get_db
from shared.models.models import ADMIN_ROLES, User, UserRole
from shared.utils.exceptions import Forbidden, Unauthorized
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class Actor:
    """Who is performing an operation. `id` is None only for the system actor."""

    def __init__(self, id: Optional[uuid.UUID], role: UserRole, is_system: bool = False):
        self.id = id
        self.role = UserRole(role)
        self.is_system = is_system

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user.id, user.role)

    @classmethod
    def system(cls) -> "Actor":
        """Identity used by background jobs: privileged, no user behind it."""
        return cls(None, UserRole.SUPER_ADMIN, is_system=True)

    @property
    def is_admin(self) -> bool:
        return self.is_system or self.role in ADMIN_ROLES

    def __repr__(self) -> str:
        return f"<Actor {self.id or 'system'} ({self.role.value})>"


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]


def decode_token(token: str) -> TokenData:
    try:
        payload = verify_access_token(token)
        return TokenData(payload)
    except (JWTError, KeyError, ValueError):
        raise Unauthorized("Invalid or expired token")


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise Unauthorized("Authentication required")
    return decode_token(credentials.credentials)


async def load_user(db: AsyncSession, token_data: TokenData) -> User:
    """Load the User row named by the token's sub claim."""
    try:
        user_id = uuid.UUID(token_data.user_id)
    except ValueError:
        raise Unauthorized("Invalid token subject")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Forbidden("User account is inactive")
    return user


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    return await load_user(db, token_data)


async def get_actor(current_user: User = Depends(get_current_user)) -> Actor:
    return Actor.from_user(current_user)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in self.roles:
            raise Forbidden(f"Required role: {[r.value for r in self.roles]}")
        return actor


# Convenience role dependencies
require_admin = RoleRequired(UserRole.ADMIN, UserRole.SUPER_ADMIN)
