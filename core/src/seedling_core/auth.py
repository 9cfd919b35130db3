from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Final

import bcrypt
from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from seedling_core.config import AuthConfig
from seedling_core.db.ids import new_session_token, session_token_hash
from seedling_core.db.users import (
    UserRow,
    count_users,
    create_session,
    create_user,
    delete_session,
    get_session,
    get_user,
    get_user_by_email,
    update_password_hash,
)
from seedling_core.errors import (
    ConflictError,
    InvalidCredentialsError,
    PermissionDeniedError,
    SessionExpiredError,
    UnauthenticatedError,
)

logger = logging.getLogger(__name__)

TOKEN_HEADER: Final[str] = "X-Seedling-Token"

# bcrypt only considers (and bcrypt>=5 only accepts) the first 72 bytes.
MAX_PASSWORD_BYTES: Final[int] = 72

_bearer_scheme = HTTPBearer(auto_error=False)
_token_header_scheme = APIKeyHeader(name=TOKEN_HEADER, auto_error=False)


def _utc_iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def hash_password(password: str, *, rounds: int = 10) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


@lru_cache(maxsize=4)
def _dummy_password_hash(rounds: int) -> str:
    """Hash checked when the email is unknown, at the same cost as real hashes."""

    return hash_password("seedling-dummy", rounds=rounds)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash: fail closed.
        return False


def _hash_rounds(password_hash: str) -> int | None:
    parts = password_hash.split("$")
    if len(parts) < 4:
        return None
    try:
        return int(parts[2])
    except ValueError:
        return None


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: int
    email: str
    username: str
    first_name: str
    last_name: str
    role: str

    @property
    def can_install(self) -> bool:
        return self.role in {"admin", "member"}

    @classmethod
    def from_row(cls, row: UserRow) -> AuthenticatedUser:
        return cls(
            user_id=row.user_id,
            email=row.email,
            username=row.username,
            first_name=row.first_name,
            last_name=row.last_name,
            role=row.role,
        )


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: str
    user: AuthenticatedUser


def authenticate(
    db_path,
    *,
    email: str,
    password: str,
    ttl_seconds: int,
    bcrypt_rounds: int = 10,
) -> IssuedSession:
    """Check credentials and issue a new session token.

    Unknown email and wrong password raise the same InvalidCredentialsError.
    """

    user = get_user_by_email(db_path, email=email)
    if user is None:
        verify_password(password, _dummy_password_hash(bcrypt_rounds))
        raise InvalidCredentialsError()

    if not verify_password(password, user.password_hash):
        raise InvalidCredentialsError()

    rounds = _hash_rounds(user.password_hash)
    if rounds is not None and rounds < bcrypt_rounds:
        update_password_hash(
            db_path, user_id=user.user_id, password_hash=hash_password(password, rounds=bcrypt_rounds)
        )

    token = new_session_token()
    expires_at = _utc_iso(datetime.now(UTC) + timedelta(seconds=ttl_seconds))
    create_session(
        db_path, token_hash=session_token_hash(token), user_id=user.user_id, expires_at=expires_at
    )
    logger.info("User %s logged in", user.user_id)
    return IssuedSession(token=token, expires_at=expires_at, user=AuthenticatedUser.from_row(user))


def validate(db_path, token: str | None) -> AuthenticatedUser:
    """Resolve a bearer token to its user.

    Expired sessions are evicted on sight.
    """

    if not token:
        raise UnauthenticatedError("Missing token")

    token_hash = session_token_hash(token)
    session = get_session(db_path, token_hash=token_hash)
    if session is None:
        raise UnauthenticatedError("Invalid token")

    if _parse_iso(session.expires_at) <= datetime.now(UTC):
        delete_session(db_path, token_hash=token_hash)
        raise SessionExpiredError("Session expired")

    user = get_user(db_path, user_id=session.user_id)
    if user is None:
        delete_session(db_path, token_hash=token_hash)
        raise UnauthenticatedError("Invalid token")

    return AuthenticatedUser.from_row(user)


def logout(db_path, token: str) -> bool:
    return delete_session(db_path, token_hash=session_token_hash(token))


def register_user(
    db_path,
    *,
    email: str,
    username: str,
    password: str,
    first_name: str = "",
    last_name: str = "",
    role: str = "member",
    bcrypt_rounds: int = 10,
) -> AuthenticatedUser:
    row = create_user(
        db_path,
        email=email,
        username=username,
        password_hash=hash_password(password, rounds=bcrypt_rounds),
        first_name=first_name,
        last_name=last_name,
        role=role,
    )
    logger.info("Registered user %s (%s)", row.user_id, row.role)
    return AuthenticatedUser.from_row(row)


def ensure_bootstrap_admin(db_path, config: AuthConfig) -> AuthenticatedUser | None:
    """Create the configured admin account if no admin exists yet."""

    admin = config.bootstrap_admin
    if not admin.is_complete:
        return None
    if count_users(db_path, role="admin") > 0:
        return None

    try:
        created = register_user(
            db_path,
            email=(admin.email or "").strip(),
            username=(admin.username or "").strip(),
            password=admin.password or "",
            role="admin",
            bcrypt_rounds=config.bcrypt_rounds,
        )
    except ConflictError:
        logger.warning("Bootstrap admin skipped; a user with that email or username exists")
        return None

    logger.info("Created bootstrap admin %s", created.username)
    return created


def require_user(
    request: Request,
    bearer: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),  # noqa: B008
    header_token: str | None = Security(_token_header_scheme),  # noqa: B008
) -> AuthenticatedUser:
    """Resolve the caller of a protected endpoint.

    Accepts either:
    - Authorization: Bearer <token> (scheme matched case-insensitively)
    - X-Seedling-Token: <token>

    The validated token is kept on `request.state.session_token` for logout.
    """

    provided = header_token
    if not provided and bearer is not None:
        provided = bearer.credentials

    user = validate(request.app.state.db_path, provided)
    request.state.user = user
    request.state.session_token = provided
    return user


def require_installer(
    user: AuthenticatedUser = Depends(require_user),  # noqa: B008
) -> AuthenticatedUser:
    if not user.can_install:
        raise PermissionDeniedError("This account may not install or remove services")
    return user
