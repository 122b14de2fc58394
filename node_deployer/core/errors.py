# node_deployer/core/errors.py

from typing import Iterable, List


# -----------------------------
# Base Errors
# -----------------------------

class DeployerError(Exception):
    """Base class for all node deployer errors."""
    pass


# -----------------------------
# Input / Domain Errors
# -----------------------------

class ValidationError(DeployerError):
    """Malformed or out-of-range input. Carries every violation found."""

    def __init__(self, violations: Iterable[str]):
        self.violations: List[str] = list(violations)
        super().__init__("; ".join(self.violations) or "invalid input")


class NotFoundError(DeployerError):
    """Unknown id or resource."""
    pass


class ConflictError(DeployerError):
    """Duplicate name/context path, or an operation already in progress."""
    pass


class InvalidStateError(DeployerError):
    """Operation not allowed from the current lifecycle state."""
    pass


# -----------------------------
# Credential Errors
# -----------------------------

class AuthError(DeployerError):
    """Invalid, expired or insufficient credential."""
    pass


# -----------------------------
# Infrastructure Errors
# -----------------------------

class TransientClusterError(DeployerError):
    """Retryable infrastructure hiccup (timeouts, 5xx, throttling)."""
    pass


class FatalClusterError(DeployerError):
    """Non-retryable cluster error. Forces the deployment to failed."""
    pass


class BuildError(DeployerError):
    """Image build failed. Retried within the attempt budget."""
    pass


class SourceUnavailableError(DeployerError):
    """Repository host unreachable or rate limited."""
    pass
