"""Test GitHub client and repository source adapter."""

from unittest.mock import MagicMock

import pytest
import requests

from node_deployer.core.errors import AuthError, NotFoundError, SourceUnavailableError, ValidationError
from node_deployer.source.adapter import RepositorySourceAdapter
from node_deployer.source.github_client import GitHubClient


def _response(status_code=200, body=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = body
    response.text = ""
    return response


REPO = {
    "id": 7,
    "name": "demo-app",
    "full_name": "acme/demo-app",
    "owner": {"login": "acme"},
    "private": True,
    "default_branch": "develop",
    "clone_url": "https://github.com/acme/demo-app.git",
    "language": "Python",
    "description": "demo",
    "stargazers_count": 3,
}


@pytest.fixture
def routes():
    """Path -> response. Unknown paths return 404."""
    return {
        "/repos/acme/demo-app": _response(body=REPO),
        "/repos/acme/demo-app/branches/develop": _response(body={"name": "develop", "commit": {"sha": "d3v"}}),
        "/repos/acme/demo-app/branches/main": _response(body={"name": "main", "commit": {"sha": "m41n"}}),
        "/repos/acme/demo-app/contents/Dockerfile": _response(body={"type": "file"}),
    }


@pytest.fixture
def session(routes):
    session = MagicMock(spec=requests.Session)

    def get(url, headers=None, params=None, timeout=None):
        path = url.replace("https://api.github.com", "")
        return routes.get(path, _response(404, {"message": "Not Found"}))

    session.get.side_effect = get
    return session


@pytest.fixture
def github(session):
    return GitHubClient(session=session)


class TestGitHubClient:

    def test_token_sent_as_bearer(self, github, session):
        github.get_repository("acme", "demo-app", "secret-token")

        headers = session.get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret-token"

    def test_anonymous_request(self, github, session):
        github.get_repository("acme", "demo-app")

        assert "Authorization" not in session.get.call_args.kwargs["headers"]

    @pytest.mark.parametrize("status,headers,error", [
        (401, {}, AuthError),
        (403, {}, AuthError),
        (403, {"X-RateLimit-Remaining": "0"}, SourceUnavailableError),
        (404, {}, NotFoundError),
        (429, {}, SourceUnavailableError),
        (502, {}, SourceUnavailableError),
    ])
    def test_error_mapping(self, github, routes, status, headers, error):
        routes["/repos/acme/demo-app"] = _response(status, {"message": "nope"}, headers)

        with pytest.raises(error):
            github.get_repository("acme", "demo-app", "t")

    def test_timeout(self, github, session):
        session.get.side_effect = requests.Timeout("slow")

        with pytest.raises(SourceUnavailableError):
            github.get_repository("acme", "demo-app")

    def test_list_repositories(self, github, routes):
        routes["/user/repos"] = _response(body=[REPO])

        repos = github.list_user_repositories("t")

        assert repos[0]["fullName"] == "acme/demo-app"
        assert repos[0]["owner"] == "acme"
        assert repos[0]["stars"] == 3

    def test_list_branches(self, github, routes):
        routes["/repos/acme/demo-app/branches"] = _response(body=[
            {"name": "main", "commit": {"sha": "m41n"}, "protected": True},
        ])

        assert github.list_branches("acme", "demo-app") == [
            {"name": "main", "commitSha": "m41n", "protected": True}
        ]

    def test_search(self, github, routes, session):
        routes["/search/repositories"] = _response(body={"total_count": 1, "items": [REPO]})

        result = github.search_repositories("demo language:python")

        assert result["totalCount"] == 1
        assert session.get.call_args.kwargs["params"]["q"] == "demo language:python"

    def test_find_dockerfile(self, github):
        assert github.find_dockerfile("acme", "demo-app", "main") == "Dockerfile"

    def test_authenticated_user(self, github, routes):
        routes["/user"] = _response(body={"login": "octo", "name": "Octo Cat", "avatar_url": "http://a"})

        assert github.get_authenticated_user("t")["login"] == "octo"


class TestResolve:

    def test_explicit_branch(self, github):
        ref = RepositorySourceAdapter(github).resolve("acme", "demo-app", "main", "t")

        assert ref.branch == "main"
        assert ref.commit_sha == "m41n"
        assert ref.full_name == "acme/demo-app"
        assert ref.private is True
        assert ref.default_branch == "develop"

    def test_empty_branch_uses_default(self, github):
        ref = RepositorySourceAdapter(github).resolve("acme", "demo-app", "", "t")

        assert ref.branch == "develop"
        assert ref.commit_sha == "d3v"

    def test_token_not_kept(self, github):
        ref = RepositorySourceAdapter(github).resolve("acme", "demo-app", "main", "secret-token")

        assert "secret-token" not in repr(ref)
        assert "secret-token" not in str(ref.to_dict())

    def test_missing_repository(self, github):
        with pytest.raises(NotFoundError):
            RepositorySourceAdapter(github).resolve("acme", "missing", "main", "t")

    def test_missing_branch(self, github):
        with pytest.raises(NotFoundError) as exc:
            RepositorySourceAdapter(github).resolve("acme", "demo-app", "feature-x", "t")

        assert str(exc.value) == "Branch 'feature-x' not found in acme/demo-app"

    def test_dockerfile_checked(self, github):
        adapter = RepositorySourceAdapter(github)

        adapter.resolve("acme", "demo-app", "main", "t", dockerfile="Dockerfile")

        with pytest.raises(ValidationError) as exc:
            adapter.resolve("acme", "demo-app", "main", "t", dockerfile="Dockerfile", build_context="services/api")
        assert "services/api/Dockerfile" in exc.value.violations[0]

    def test_bad_token(self, github, routes):
        routes["/repos/acme/demo-app"] = _response(401, {"message": "Bad credentials"})

        with pytest.raises(AuthError):
            RepositorySourceAdapter(github).resolve("acme", "demo-app", "main", "expired")
