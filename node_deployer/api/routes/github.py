# node_deployer/api/routes/github.py
"""Repository browsing on behalf of the caller's GitHub token."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from node_deployer.api.dependencies import get_container, get_current_user, get_github_token, require_user
from node_deployer.api.schemas.auth import GitHubTokenRequest
from node_deployer.auth.models import User
from node_deployer.container import Container
from node_deployer.core.errors import AuthError
from node_deployer.source.github_client import repo_summary

router = APIRouter(prefix="/github", tags=["github"], dependencies=[Depends(get_current_user)])


def _required(token: Optional[str]) -> str:
    if not token:
        raise AuthError("A GitHub token is required (X-GitHub-Token header or a saved token)")
    return token


@router.get("/repos")
def list_repositories(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100, alias="perPage"),
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
) -> List[Dict[str, Any]]:
    return container.github.list_user_repositories(_required(github_token), page=page, per_page=per_page)


@router.get("/repos/{owner}/{repo}")
def get_repository(
    owner: str,
    repo: str,
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return repo_summary(container.github.get_repository(owner, repo, github_token))


@router.get("/repos/{owner}/{repo}/branches")
def list_branches(
    owner: str,
    repo: str,
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
) -> List[Dict[str, Any]]:
    return container.github.list_branches(owner, repo, github_token)


@router.get("/search")
def search_repositories(
    q: str = Query(..., min_length=1),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=30, ge=1, le=100, alias="perPage"),
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return container.github.search_repositories(q, github_token, page=page, per_page=per_page)


@router.get("/user")
def github_user(
    github_token: Optional[str] = Depends(get_github_token),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    return container.github.get_authenticated_user(_required(github_token))


@router.post("/token", status_code=status.HTTP_204_NO_CONTENT)
def save_token(
    request: GitHubTokenRequest,
    user: User = Depends(require_user),
    container: Container = Depends(get_container),
):
    """
    Save the GitHub token on the account (encrypted). An empty token clears it.

    The token is checked against GitHub before it is stored.
    """
    if request.token:
        container.github.get_authenticated_user(request.token)
    container.auth.save_github_token(user.id, request.token or None)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
