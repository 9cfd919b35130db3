from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from seedling_core.errors import ConflictError

USER_ROLES: frozenset[str] = frozenset({"admin", "member", "viewer"})

_USER_COLUMNS = (
    "user_id, email, username, first_name, last_name, role, password_hash, created_at, updated_at"
)


def _utc_now_sqlite_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _connect(db_path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@dataclass(frozen=True)
class UserRow:
    user_id: int
    email: str
    username: str
    first_name: str
    last_name: str
    role: str
    password_hash: str
    created_at: str
    updated_at: str


def _user_from_db_row(row: sqlite3.Row) -> UserRow:
    return UserRow(
        user_id=int(row["user_id"]),
        email=row["email"],
        username=row["username"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        role=row["role"],
        password_hash=row["password_hash"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create_user(
    db_path,
    *,
    email: str,
    username: str,
    password_hash: str,
    first_name: str = "",
    last_name: str = "",
    role: str = "member",
) -> UserRow:
    if role not in USER_ROLES:
        raise ValueError(f"Unknown role: {role}")

    with _connect(db_path) as conn:
        try:
            cur = conn.execute(
                """
                INSERT INTO users (email, username, first_name, last_name, role, password_hash)
                VALUES (?, ?, ?, ?, ?, ?);
                """.strip(),
                (email.strip(), username.strip(), first_name, last_name, role, password_hash),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError("Username or email already exists") from e

        row = conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?;",
            (cur.lastrowid,),
        ).fetchone()

    if row is None:
        raise RuntimeError("Failed to read user after insert")

    return _user_from_db_row(row)


def get_user(db_path, *, user_id: int) -> UserRow | None:
    with _connect(db_path) as conn:
        row = conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?;",
            (user_id,),
        ).fetchone()
    return _user_from_db_row(row) if row is not None else None


def get_user_by_email(db_path, *, email: str) -> UserRow | None:
    # email is declared COLLATE NOCASE, so this lookup is case-insensitive.
    with _connect(db_path) as conn:
        row = conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?;",
            (email.strip(),),
        ).fetchone()
    return _user_from_db_row(row) if row is not None else None


def count_users(db_path, *, role: str | None = None) -> int:
    where = ""
    params: list[Any] = []
    if role is not None:
        where = "WHERE role = ?"
        params.append(role)

    with _connect(db_path) as conn:
        row = conn.execute(f"SELECT COUNT(1) AS n FROM users {where};", params).fetchone()
    return int(row["n"]) if row is not None else 0


def update_password_hash(db_path, *, user_id: int, password_hash: str) -> None:
    with _connect(db_path) as conn:
        conn.execute(
            "UPDATE users SET password_hash = ?, updated_at = ? WHERE user_id = ?;",
            (password_hash, _utc_now_sqlite_iso(), user_id),
        )


@dataclass(frozen=True)
class SessionRow:
    token_hash: str
    user_id: int
    created_at: str
    expires_at: str


def _session_from_db_row(row: sqlite3.Row) -> SessionRow:
    return SessionRow(
        token_hash=row["token_hash"],
        user_id=int(row["user_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def create_session(db_path, *, token_hash: str, user_id: int, expires_at: str) -> SessionRow:
    with _connect(db_path) as conn:
        conn.execute(
            "INSERT INTO sessions (token_hash, user_id, expires_at) VALUES (?, ?, ?);",
            (token_hash, user_id, expires_at),
        )
        row = conn.execute(
            "SELECT token_hash, user_id, created_at, expires_at FROM sessions WHERE token_hash = ?;",
            (token_hash,),
        ).fetchone()

    if row is None:
        raise RuntimeError("Failed to read session after insert")

    return _session_from_db_row(row)


def get_session(db_path, *, token_hash: str) -> SessionRow | None:
    with _connect(db_path) as conn:
        row = conn.execute(
            "SELECT token_hash, user_id, created_at, expires_at FROM sessions WHERE token_hash = ?;",
            (token_hash,),
        ).fetchone()
    return _session_from_db_row(row) if row is not None else None


def delete_session(db_path, *, token_hash: str) -> bool:
    with _connect(db_path) as conn:
        cur = conn.execute("DELETE FROM sessions WHERE token_hash = ?;", (token_hash,))
        return cur.rowcount > 0


def delete_expired_sessions(db_path, *, now_iso: str | None = None) -> int:
    now = now_iso or _utc_now_sqlite_iso()
    with _connect(db_path) as conn:
        cur = conn.execute("DELETE FROM sessions WHERE expires_at <= ?;", (now,))
        return cur.rowcount
