# node_deployer/api/dependencies.py

from typing import Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from node_deployer.auth.models import User
from node_deployer.container import Container
from node_deployer.core.errors import AuthError

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    container: Container = Depends(get_container),
) -> Optional[User]:
    """
    Resolve the bearer token to a user.

    Returns None when authentication is disabled in settings.
    """
    if not container.settings.auth_enabled:
        return None
    if credentials is None:
        raise AuthError("Not authenticated")
    return container.auth.validate_token(credentials.credentials)


def require_user(user: Optional[User] = Depends(get_current_user)) -> User:
    """For routes that only make sense with an account behind them."""
    if user is None:
        raise AuthError("An authenticated user is required")
    return user


def get_github_token(
    x_github_token: Optional[str] = Header(default=None, alias="X-GitHub-Token"),
    user: Optional[User] = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Optional[str]:
    """The ``X-GitHub-Token`` header, else the token saved on the account."""
    if x_github_token:
        return x_github_token
    if user is not None:
        return container.auth.get_github_token(user)
    return None
