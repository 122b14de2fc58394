# node_deployer/api/errors.py

"""Maps domain errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from node_deployer.core.errors import (
    AuthError,
    BuildError,
    ConflictError,
    DeployerError,
    FatalClusterError,
    InvalidStateError,
    NotFoundError,
    SourceUnavailableError,
    TransientClusterError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Most specific first; the first isinstance match wins.
STATUS_CODES = [
    (ValidationError, 422, "validation_error"),
    (NotFoundError, 404, "not_found"),
    (ConflictError, 409, "conflict"),
    (InvalidStateError, 409, "invalid_state"),
    (AuthError, 401, "authentication_failure"),
    (TransientClusterError, 503, "cluster_unavailable"),
    (FatalClusterError, 502, "cluster_error"),
    (SourceUnavailableError, 502, "source_unavailable"),
    (BuildError, 502, "build_failed"),
]


def error_response(exc: DeployerError) -> JSONResponse:
    status_code, error_type = 500, "internal_error"
    for error_class, code, kind in STATUS_CODES:
        if isinstance(exc, error_class):
            status_code, error_type = code, kind
            break

    content = {"detail": str(exc), "errorType": error_type}
    if isinstance(exc, ValidationError):
        content["violations"] = exc.violations

    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def setup_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(DeployerError)
    async def deployer_exception_handler(request: Request, exc: DeployerError):
        response = error_response(exc)
        if response.status_code >= 500:
            logger.error(f"[api] {request.method} {request.url.path}: {type(exc).__name__}: {exc}")
        else:
            logger.info(f"[api] {request.method} {request.url.path} -> {response.status_code}: {exc}")
        return response
