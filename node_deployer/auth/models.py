"""User account model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import UUID

from node_deployer.core.models import utcnow


@dataclass
class User:
    id: UUID
    email: str
    username: str
    password_hash: str
    full_name: Optional[str] = None
    role: str = "user"
    is_active: bool = True

    # Fernet token, never the raw GitHub token
    github_token_encrypted: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
