from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator

from seedling_core.api.models import ApiError, ApiResponse, ok
from seedling_core.auth import (
    MAX_PASSWORD_BYTES,
    AuthenticatedUser,
    authenticate,
    logout,
    register_user,
    require_user,
)
from seedling_core.config import CoreConfig
from seedling_core.errors import PermissionDeniedError

router = APIRouter(prefix="/users", tags=["users"])


class User(BaseModel):
    user_id: int
    username: str
    email: str
    first_name: str
    last_name: str
    role: str


def _to_user(user: AuthenticatedUser) -> User:
    return User(
        user_id=user.user_id,
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        role=user.role,
    )


def _config(request: Request) -> CoreConfig:
    return request.app.state.seedling_config


class CreateUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_BYTES)
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)

    @field_validator("password")
    @classmethod
    def _password_fits_bcrypt(cls, value: str) -> str:
        # max_length counts characters; bcrypt's limit is in UTF-8 bytes.
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


@router.post("", response_model=ApiResponse[User])
def users_create(request: Request, payload: CreateUserRequest) -> ApiResponse[User]:
    config = _config(request)
    if not config.auth.allow_registration:
        raise PermissionDeniedError("Registration is disabled")

    user = register_user(
        request.app.state.db_path,
        email=payload.email,
        username=payload.username,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        bcrypt_rounds=config.auth.bcrypt_rounds,
    )
    return ok(_to_user(user))


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    ok: bool = True
    token: str
    expires_at: str
    data: User
    error: ApiError | None = None


@router.post("/login", response_model=LoginResponse)
def users_login(request: Request, payload: LoginRequest) -> LoginResponse:
    config = _config(request)
    issued = authenticate(
        request.app.state.db_path,
        email=payload.email,
        password=payload.password,
        ttl_seconds=config.auth.session_ttl_seconds,
        bcrypt_rounds=config.auth.bcrypt_rounds,
    )
    return LoginResponse(token=issued.token, expires_at=issued.expires_at, data=_to_user(issued.user))


@router.get("", response_model=ApiResponse[User])
def users_me(user: AuthenticatedUser = Depends(require_user)) -> ApiResponse[User]:  # noqa: B008
    return ok(_to_user(user))


@router.post("/logout", response_model=ApiResponse[dict[str, bool]])
def users_logout(
    request: Request,
    user: AuthenticatedUser = Depends(require_user),  # noqa: B008
) -> ApiResponse[dict[str, bool]]:
    removed = logout(request.app.state.db_path, request.state.session_token)
    return ok({"logged_out": removed})
