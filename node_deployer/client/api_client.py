# node_deployer/client/api_client.py

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

import requests

from node_deployer.core.errors import (
    AuthError,
    ConflictError,
    DeployerError,
    InvalidStateError,
    NotFoundError,
    SourceUnavailableError,
    TransientClusterError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Credentials for one logged-in user. Cleared on any 401."""
    token: Optional[str] = None
    username: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.token is not None

    def clear(self) -> None:
        self.token = None
        self.username = None


class DeployerClient:
    """
    Thin client for the node deployer REST API.

    The session is passed in explicitly and its token is attached to every
    call. A 401 response clears it and raises AuthError.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[Session] = None,
        timeout: float = 10,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or Session()
        self.timeout = timeout
        self._http = http or requests.Session()

    # -------------------------
    # HTTP
    # -------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        headers = dict(headers or {})
        if self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(
                method, url, params=params, json=json, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise SourceUnavailableError(f"{method} {url} failed: {e}") from e

        if response.status_code == 401:
            logger.info("[client] 401 received, clearing session")
            self.session.clear()
            raise AuthError(_detail(response) or "Not authenticated")
        if response.status_code >= 400:
            raise _error_for(response)

        if response.status_code == 204 or not response.content:
            return None
        if response.headers.get("content-type", "").startswith("application/json"):
            return response.json()
        return response.text

    # -------------------------
    # AUTH
    # -------------------------

    def register(self, email: str, username: str, password: str, full_name: Optional[str] = None) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/auth/register",
            json={"email": email, "username": username, "password": password, "fullName": full_name},
        )

    def login(self, identifier: str, password: str) -> Dict[str, Any]:
        """Log in by email or username and store the token on the session."""
        key = "email" if "@" in identifier else "username"
        data = self._request("POST", "/auth/login", json={key: identifier, "password": password})
        self.session.token = data["token"]
        self.session.username = data["user"]["username"]
        return data

    def logout(self) -> None:
        self.session.clear()

    def validate(self) -> Dict[str, Any]:
        return self._request("GET", "/auth/validate")

    # -------------------------
    # NODES
    # -------------------------

    def list_nodes(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._request("GET", "/nodes", params={"status": status})

    def register_node(self, descriptor: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/nodes", json=descriptor)

    def get_node(self, node_id: UUID) -> Dict[str, Any]:
        return self._request("GET", f"/nodes/{node_id}")

    def update_node(self, node_id: UUID, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"/nodes/{node_id}", json=changes)

    def delete_node(self, node_id: UUID) -> None:
        self._request("DELETE", f"/nodes/{node_id}")

    def heartbeat(self, node_id: UUID, usage: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("POST", f"/nodes/{node_id}/heartbeat", json={"usage": usage} if usage else None)

    def set_node_status(self, node_id: UUID, status: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("PUT", f"/nodes/{node_id}/status", json={"status": status, "reason": reason})

    def node_stats(self) -> Dict[str, Any]:
        return self._request("GET", "/nodes/stats")

    # -------------------------
    # DEPLOYMENTS
    # -------------------------

    def list_deployments(self, node_id: Optional[UUID] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return self._request("GET", "/deployments", params={"nodeId": node_id, "status": status})

    def create_deployment(
        self,
        request: Dict[str, Any],
        node_id: UUID,
        github_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"X-GitHub-Token": github_token} if github_token else None
        return self._request(
            "POST", "/deployments", params={"nodeId": str(node_id)}, json=request, headers=headers
        )

    def get_deployment(self, deployment_id: UUID) -> Dict[str, Any]:
        return self._request("GET", f"/deployments/{deployment_id}")

    def update_deployment(self, deployment_id: UUID, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"/deployments/{deployment_id}", json=changes)

    def delete_deployment(self, deployment_id: UUID, hard: bool = False) -> Dict[str, Any]:
        return self._request(
            "DELETE", f"/deployments/{deployment_id}", params={"hard": "true" if hard else None}
        )

    def restart_deployment(self, deployment_id: UUID, github_token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"X-GitHub-Token": github_token} if github_token else None
        return self._request("POST", f"/deployments/{deployment_id}/restart", headers=headers)

    def scale_deployment(self, deployment_id: UUID, replicas: int) -> Dict[str, Any]:
        return self._request("POST", f"/deployments/{deployment_id}/scale", json={"replicas": replicas})

    def refresh_deployment(self, deployment_id: UUID) -> Dict[str, Any]:
        return self._request("POST", f"/deployments/{deployment_id}/refresh")

    def deployment_stats(self, node_id: Optional[UUID] = None) -> Dict[str, int]:
        return self._request("GET", "/deployments/stats", params={"nodeId": node_id})

    # -------------------------
    # GITHUB / CLUSTER / METRICS
    # -------------------------

    def save_github_token(self, token: Optional[str]) -> None:
        self._request("POST", "/github/token", json={"token": token})

    def github_repositories(self, page: int = 1, per_page: int = 30) -> List[Dict[str, Any]]:
        return self._request("GET", "/github/repos", params={"page": page, "perPage": per_page})

    def github_branches(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        return self._request("GET", f"/github/repos/{owner}/{repo}/branches")

    def pod_logs(self, namespace: str, name: str, tail: int = 100) -> str:
        return self._request("GET", f"/k8s/pods/{namespace}/{name}/logs", params={"tail": tail})

    def cluster_metrics(self) -> Dict[str, Any]:
        return self._request("GET", "/metrics/cluster")

    def deployment_metrics(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._request("GET", f"/metrics/deployments/{namespace}/{name}")


# ============================================
# Error mapping
# ============================================

def _detail(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        detail = body.get("detail")
        return detail if isinstance(detail, str) else str(detail)
    return None


def _error_for(response: requests.Response) -> DeployerError:
    detail = _detail(response) or f"HTTP {response.status_code}"
    code = response.status_code
    if code == 422:
        try:
            violations = response.json().get("violations")
        except (ValueError, AttributeError):
            violations = None
        return ValidationError(violations or [detail])
    if code == 404:
        return NotFoundError(detail)
    if code == 409:
        try:
            kind = response.json().get("errorType")
        except (ValueError, AttributeError):
            kind = None
        return InvalidStateError(detail) if kind == "invalid_state" else ConflictError(detail)
    if code == 503:
        return TransientClusterError(detail)
    if code == 502:
        return SourceUnavailableError(detail)
    return DeployerError(detail)
