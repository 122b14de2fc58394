"""Repository source adapter: GitHub repository + branch + token -> RepositoryRef."""

import logging
import posixpath
from typing import Optional

from node_deployer.core.errors import NotFoundError, ValidationError
from node_deployer.core.models import RepositoryRef
from node_deployer.source.github_client import GitHubClient

logger = logging.getLogger(__name__)


class RepositorySourceAdapter:
    """
    Resolves a repository at deployment creation time.

    The token is only used for the calls made here. It is never stored by
    the adapter or written into the returned reference.
    """

    def __init__(self, client: GitHubClient):
        self._client = client

    def resolve(
        self,
        owner: str,
        name: str,
        branch: Optional[str],
        token: Optional[str],
        dockerfile: Optional[str] = None,
        build_context: str = ".",
    ) -> RepositoryRef:
        """
        Validate the repository exists and the token can read it.

        An empty branch resolves to the repository default branch. When
        ``dockerfile`` is given it must exist at the branch.

        Raises:
            AuthError: invalid/expired token
            NotFoundError: repository or branch missing
            ValidationError: dockerfile missing at the branch
            SourceUnavailableError: GitHub unreachable
        """
        repo = self._client.get_repository(owner, name, token)
        branch = branch or repo.get("default_branch") or "main"

        try:
            branch_data = self._client.get_branch(owner, name, branch, token)
        except NotFoundError as e:
            raise NotFoundError(f"Branch '{branch}' not found in {owner}/{name}") from e

        if dockerfile:
            path = posixpath.normpath(posixpath.join(build_context or ".", dockerfile))
            if not self._client.file_exists(owner, name, path, branch, token):
                raise ValidationError(
                    [f"buildConfig.dockerfile: '{path}' not found in {owner}/{name}@{branch}"]
                )

        ref = RepositoryRef(
            owner=(repo.get("owner") or {}).get("login") or owner,
            name=repo.get("name") or name,
            branch=branch,
            full_name=repo.get("full_name") or f"{owner}/{name}",
            commit_sha=(branch_data.get("commit") or {}).get("sha"),
            clone_url=repo.get("clone_url"),
            private=bool(repo.get("private", False)),
            default_branch=repo.get("default_branch"),
            language=repo.get("language"),
            description=repo.get("description"),
        )
        logger.info(f"[source] resolved {ref.full_name}@{ref.branch} ({ref.commit_sha})")
        return ref
