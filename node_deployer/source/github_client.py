# node_deployer/source/github_client.py
"""GitHub REST API client."""

import logging
from typing import Any, Dict, List, Optional

import requests

from node_deployer.core.errors import AuthError, NotFoundError, SourceUnavailableError

logger = logging.getLogger(__name__)

DOCKERFILE_CANDIDATES = ("Dockerfile", "dockerfile", ".docker/Dockerfile", "docker/Dockerfile")


def repo_summary(data: Dict[str, Any]) -> Dict[str, Any]:
    """The repository fields the dashboard shows."""
    return {
        "id": data.get("id"),
        "name": data.get("name"),
        "fullName": data.get("full_name"),
        "owner": (data.get("owner") or {}).get("login"),
        "description": data.get("description"),
        "private": data.get("private", False),
        "htmlUrl": data.get("html_url"),
        "cloneUrl": data.get("clone_url"),
        "defaultBranch": data.get("default_branch"),
        "language": data.get("language"),
        "stars": data.get("stargazers_count", 0),
        "forks": data.get("forks_count", 0),
        "updatedAt": data.get("updated_at"),
    }


class GitHubClient:
    """
    Thin client over the GitHub REST API.

    The token is passed per call and never stored on the client. Errors are
    mapped to the service taxonomy:

    - 401, or 403 that is not rate limiting -> AuthError
    - 404 -> NotFoundError
    - 5xx, rate limiting, timeouts, connection errors -> SourceUnavailableError
    """

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    # ============================================
    # HTTP
    # ============================================

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "node-deployer",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get(self, path: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.get(
                url,
                headers=self._headers(token),
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise SourceUnavailableError(f"GitHub request timed out: {path}") from e
        except requests.RequestException as e:
            raise SourceUnavailableError(f"GitHub unreachable: {e}") from e

        if response.status_code == 401:
            raise AuthError("GitHub token is invalid or expired")
        if response.status_code == 403:
            if response.headers.get("X-RateLimit-Remaining") == "0":
                raise SourceUnavailableError("GitHub rate limit exceeded")
            raise AuthError("GitHub token cannot access this resource")
        if response.status_code == 404:
            raise NotFoundError(f"GitHub resource not found: {path}")
        if response.status_code == 429 or response.status_code >= 500:
            raise SourceUnavailableError(f"GitHub returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise SourceUnavailableError(f"GitHub returned {response.status_code} for {path}: {response.text[:200]}")

        return response.json()

    # ============================================
    # REPOSITORIES
    # ============================================

    def get_authenticated_user(self, token: str) -> Dict[str, Any]:
        data = self._get("/user", token)
        return {
            "login": data.get("login"),
            "name": data.get("name"),
            "email": data.get("email"),
            "avatarUrl": data.get("avatar_url"),
            "publicRepos": data.get("public_repos"),
        }

    def list_user_repositories(self, token: str, page: int = 1, per_page: int = 30) -> List[Dict[str, Any]]:
        """Repositories of the token owner, most recently updated first."""
        data = self._get(
            "/user/repos",
            token,
            params={"sort": "updated", "direction": "desc", "page": page, "per_page": per_page},
        )
        return [repo_summary(item) for item in data]

    def get_repository(self, owner: str, name: str, token: Optional[str] = None) -> Dict[str, Any]:
        return self._get(f"/repos/{owner}/{name}", token)

    def list_branches(self, owner: str, name: str, token: Optional[str] = None) -> List[Dict[str, Any]]:
        data = self._get(f"/repos/{owner}/{name}/branches", token, params={"per_page": 100})
        return [
            {
                "name": item.get("name"),
                "commitSha": (item.get("commit") or {}).get("sha"),
                "protected": item.get("protected", False),
            }
            for item in data
        ]

    def get_branch(self, owner: str, name: str, branch: str, token: Optional[str] = None) -> Dict[str, Any]:
        return self._get(f"/repos/{owner}/{name}/branches/{branch}", token)

    def search_repositories(
        self,
        query: str,
        token: Optional[str] = None,
        page: int = 1,
        per_page: int = 30,
    ) -> Dict[str, Any]:
        data = self._get(
            "/search/repositories",
            token,
            params={"q": query, "page": page, "per_page": per_page},
        )
        return {
            "totalCount": data.get("total_count", 0),
            "items": [repo_summary(item) for item in data.get("items", [])],
        }

    # ============================================
    # CONTENTS
    # ============================================

    def file_exists(self, owner: str, name: str, path: str, ref: str, token: Optional[str] = None) -> bool:
        try:
            self._get(f"/repos/{owner}/{name}/contents/{path.lstrip('/')}", token, params={"ref": ref})
        except NotFoundError:
            return False
        return True

    def find_dockerfile(self, owner: str, name: str, ref: str, token: Optional[str] = None) -> Optional[str]:
        """First conventional Dockerfile location present at ``ref``."""
        for candidate in DOCKERFILE_CANDIDATES:
            if self.file_exists(owner, name, candidate, ref, token):
                return candidate
        return None
