# node_deployer/api/routes/auth.py
"""Account registration, login and token validation."""

from fastapi import APIRouter, Depends, status

from node_deployer.api.dependencies import get_container, require_user
from node_deployer.api.schemas.auth import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from node_deployer.auth.models import User
from node_deployer.container import Container
from node_deployer.core.errors import ValidationError

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, container: Container = Depends(get_container)):
    user = container.auth.register(
        email=request.email,
        username=request.username,
        password=request.password,
        full_name=request.full_name,
    )
    return UserResponse.from_domain(user)


@router.post("/login", response_model=TokenResponse)
def login(request: LoginRequest, container: Container = Depends(get_container)):
    identifier = request.email or request.username
    if not identifier:
        raise ValidationError(["email: email or username is required"])

    result = container.auth.login(identifier, request.password)
    return TokenResponse(
        token=result["token"],
        token_type=result["tokenType"],
        expires_in=result["expiresIn"],
        user=UserResponse.from_domain(result["user"]),
    )


@router.get("/validate", response_model=UserResponse)
def validate(user: User = Depends(require_user)):
    """Returns the user behind the bearer token, or 401."""
    return UserResponse.from_domain(user)
