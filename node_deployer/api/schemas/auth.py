from datetime import datetime
from typing import Optional
from uuid import UUID

from node_deployer.api.schemas.common import CamelModel
from node_deployer.auth.models import User


class RegisterRequest(CamelModel):
    email: str
    username: str
    password: str
    full_name: Optional[str] = None


class LoginRequest(CamelModel):
    """Log in with either the email or the username."""
    email: Optional[str] = None
    username: Optional[str] = None
    password: str


class GitHubTokenRequest(CamelModel):
    token: Optional[str] = None


class UserResponse(CamelModel):
    id: UUID
    email: str
    username: str
    full_name: Optional[str]
    role: str
    is_active: bool
    has_github_token: bool
    created_at: datetime
    last_login_at: Optional[datetime]

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            full_name=user.full_name,
            role=user.role,
            is_active=user.is_active,
            has_github_token=user.github_token_encrypted is not None,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class TokenResponse(CamelModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse
