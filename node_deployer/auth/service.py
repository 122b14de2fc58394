"""User accounts, bearer tokens and the saved GitHub token."""

import base64
import hashlib
import logging
import re
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from passlib.context import CryptContext

from node_deployer.auth.models import User
from node_deployer.core.errors import AuthError, ConflictError, NotFoundError, ValidationError
from node_deployer.core.models import utcnow
from node_deployer.core.repository import UserRepository

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
MIN_PASSWORD_LENGTH = 8


class AuthService:
    """
    Registration, login and token validation.

    Passwords are hashed with passlib (pbkdf2_sha256). Access tokens are
    HS256 JWTs carrying the user id as ``sub``. A GitHub token saved by the
    user is stored Fernet-encrypted with a key derived from the JWT secret.
    """

    def __init__(
        self,
        user_repo: UserRepository,
        secret_key: str,
        algorithm: str = "HS256",
        expiry_hours: int = 24,
    ):
        self._users = user_repo
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expiry = timedelta(hours=expiry_hours)
        self._pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
        self._fernet = Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode()).digest()))

    # -------------------------
    # PASSWORDS / TOKENS
    # -------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        return self._pwd_context.verify(password, password_hash)

    def create_access_token(self, user: User) -> str:
        now = utcnow()
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "role": user.role,
            "iat": int(now.timestamp()),
            "exp": int((now + self._expiry).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def validate_token(self, token: str) -> User:
        """
        Resolve a bearer token to an active user.

        Raises:
            AuthError: invalid, expired, or for an unknown/inactive user
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
            user_id = UUID(payload["sub"])
        except (JWTError, KeyError, ValueError) as e:
            raise AuthError("Invalid or expired token") from e

        user = self._users.get(user_id)
        if user is None or not user.is_active:
            raise AuthError("Invalid or expired token")
        return user

    # -------------------------
    # REGISTER / LOGIN
    # -------------------------

    def register(
        self,
        email: str,
        username: str,
        password: str,
        full_name: Optional[str] = None,
    ) -> User:
        """
        Raises:
            ValidationError: malformed email/username or short password
            ConflictError: email or username already registered
        """
        violations = []
        if not email or not EMAIL_RE.match(email):
            violations.append("email: must be a valid email address")
        if not username or not USERNAME_RE.match(username):
            violations.append("username: 3-50 characters of letters, digits, '_', '.', '-'")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            violations.append(f"password: must be at least {MIN_PASSWORD_LENGTH} characters")
        if violations:
            raise ValidationError(violations)

        email = email.strip().lower()
        if self._users.get_by_email(email):
            raise ConflictError("Email already registered")
        if self._users.get_by_username(username):
            raise ConflictError("Username already registered")

        user = User(
            id=uuid4(),
            email=email,
            username=username,
            password_hash=self.hash_password(password),
            full_name=full_name,
        )
        self._users.create(user)
        logger.info(f"[auth] registered user {user.username} ({user.id})")
        return user

    def login(self, identifier: str, password: str) -> Dict[str, Any]:
        """
        Authenticate by email or username. Returns the token and the user.

        Raises:
            AuthError: unknown user, wrong password or inactive account
        """
        identifier = (identifier or "").strip()
        user = self._users.get_by_email(identifier.lower()) or self._users.get_by_username(identifier)
        if user is None or not self.verify_password(password or "", user.password_hash):
            raise AuthError("Invalid credentials")
        if not user.is_active:
            raise AuthError("Account is disabled")

        user.last_login_at = utcnow()
        self._users.save(user)
        logger.info(f"[auth] user {user.username} logged in")
        return {
            "token": self.create_access_token(user),
            "tokenType": "bearer",
            "expiresIn": int(self._expiry.total_seconds()),
            "user": user,
        }

    # -------------------------
    # SAVED GITHUB TOKEN
    # -------------------------

    def save_github_token(self, user_id: UUID, github_token: Optional[str]) -> None:
        """Store (or clear, with None) the user's GitHub token, encrypted."""
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        user.github_token_encrypted = (
            self._fernet.encrypt(github_token.encode()).decode() if github_token else None
        )
        self._users.save(user)
        logger.info(f"[auth] {'saved' if github_token else 'cleared'} GitHub token for {user.username}")

    def get_github_token(self, user: User) -> Optional[str]:
        if not user.github_token_encrypted:
            return None
        try:
            return self._fernet.decrypt(user.github_token_encrypted.encode()).decode()
        except InvalidToken:
            logger.warning(f"[auth] saved GitHub token of {user.username} cannot be decrypted")
            return None
