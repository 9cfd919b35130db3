"""Installation state store.

One row per service key. A key without a row is implicitly ``not_installed``.
Every mutation goes through :func:`transition`, which checks the expected
state, the allowed edge and (optionally) the attempt fence inside a single
``BEGIN IMMEDIATE`` transaction, so concurrent callers cannot interleave a
read and a write.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from seedling_core.errors import ConflictError, StaleAttemptError


class InstallState(StrEnum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.NOT_INSTALLED: frozenset({InstallState.INSTALLING}),
    InstallState.INSTALLING: frozenset({InstallState.RUNNING, InstallState.FAILED}),
    InstallState.RUNNING: frozenset({InstallState.STOPPED}),
    InstallState.STOPPED: frozenset({InstallState.INSTALLING, InstallState.NOT_INSTALLED}),
    InstallState.FAILED: frozenset({InstallState.INSTALLING, InstallState.NOT_INSTALLED}),
}

INSTALLABLE_FROM: frozenset[InstallState] = frozenset(
    {InstallState.NOT_INSTALLED, InstallState.FAILED, InstallState.STOPPED}
)

_MUTABLE_FIELDS = frozenset({"live_url", "last_error", "port", "installed_by"})

_SELECT_COLUMNS = """
    service_key, state, attempt_id, live_url, error_json, port, installed_by,
    attempt_started_at, created_at, updated_at
""".strip()


def _utc_now_sqlite_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _connect(db_path) -> sqlite3.Connection:
    # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _loads_json(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


@dataclass(frozen=True)
class InstallationRow:
    key: str
    state: InstallState
    attempt_id: int
    live_url: str | None
    last_error: dict[str, Any] | None
    port: int | None
    installed_by: int | None
    attempt_started_at: str | None
    created_at: str | None
    updated_at: str | None

    @property
    def is_recorded(self) -> bool:
        return self.created_at is not None


def implicit_installation(key: str) -> InstallationRow:
    return InstallationRow(
        key=key,
        state=InstallState.NOT_INSTALLED,
        attempt_id=0,
        live_url=None,
        last_error=None,
        port=None,
        installed_by=None,
        attempt_started_at=None,
        created_at=None,
        updated_at=None,
    )


def _row_from_db(row: sqlite3.Row) -> InstallationRow:
    error = _loads_json(row["error_json"])
    return InstallationRow(
        key=row["service_key"],
        state=InstallState(row["state"]),
        attempt_id=int(row["attempt_id"]),
        live_url=row["live_url"],
        last_error=error if isinstance(error, dict) else None,
        port=row["port"],
        installed_by=row["installed_by"],
        attempt_started_at=row["attempt_started_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _select_one(conn: sqlite3.Connection, key: str) -> InstallationRow | None:
    row = conn.execute(
        f"SELECT {_SELECT_COLUMNS} FROM service_installations WHERE service_key = ?;",
        (key,),
    ).fetchone()
    return _row_from_db(row) if row is not None else None


def get_installation(db_path, *, key: str) -> InstallationRow:
    """Return the recorded row for `key`, or an implicit not_installed row."""

    conn = _connect(db_path)
    try:
        found = _select_one(conn, key)
    finally:
        conn.close()
    return found if found is not None else implicit_installation(key)


def list_installations(
    db_path, *, states: Iterable[InstallState | str] | None = None
) -> dict[str, InstallationRow]:
    params: list[Any] = []
    where = ""
    if states is not None:
        wanted = [InstallState(s).value for s in states]
        if not wanted:
            return {}
        where = f"WHERE state IN ({', '.join('?' for _ in wanted)})"
        params.extend(wanted)

    conn = _connect(db_path)
    try:
        rows = conn.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM service_installations
            {where}
            ORDER BY service_key ASC;
            """.strip(),
            params,
        ).fetchall()
    finally:
        conn.close()

    out: dict[str, InstallationRow] = {}
    for r in rows:
        inst = _row_from_db(r)
        out[inst.key] = inst
    return out


def _normalize_expected(
    expected: InstallState | str | Iterable[InstallState | str] | None,
) -> frozenset[InstallState] | None:
    if expected is None:
        return None
    if isinstance(expected, str):
        return frozenset({InstallState(expected)})
    return frozenset(InstallState(s) for s in expected)


def transition(
    db_path,
    *,
    key: str,
    expected: InstallState | str | Iterable[InstallState | str] | None,
    new_state: InstallState | str,
    attempt_id: int | None = None,
    fields: Mapping[str, Any] | None = None,
) -> InstallationRow:
    """Atomically move `key` to `new_state`.

    - `expected=None` accepts any current state; otherwise the current state must be in it.
    - `attempt_id`, when given, must equal the stored attempt id (attempt fencing).
    - The edge must be in ALLOWED_TRANSITIONS.
    - Entering `installing` bumps the attempt id; the returned row carries the new value.
    - `fields` may set live_url, last_error, port and installed_by.

    Raises ConflictError (or StaleAttemptError) and leaves the row untouched on any mismatch.
    """

    target = InstallState(new_state)
    expected_states = _normalize_expected(expected)
    updates = dict(fields or {})
    unknown = set(updates) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported installation fields: {sorted(unknown)}")

    now = _utc_now_sqlite_iso()
    conn = _connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        stored = _select_one(conn, key)
        current = stored if stored is not None else implicit_installation(key)

        if attempt_id is not None and attempt_id != current.attempt_id:
            raise StaleAttemptError(
                f"Attempt {attempt_id} for {key} is no longer current",
                details={"key": key, "attempt_id": attempt_id, "current": current.attempt_id},
            )

        if expected_states is not None and current.state not in expected_states:
            raise ConflictError(
                f"Service {key} is {current.state.value}",
                details={
                    "key": key,
                    "state": current.state.value,
                    "expected": sorted(s.value for s in expected_states),
                },
            )

        if target not in ALLOWED_TRANSITIONS[current.state]:
            raise ConflictError(
                f"Illegal transition for {key}: {current.state.value} -> {target.value}",
                details={"key": key, "from": current.state.value, "to": target.value},
            )

        values: dict[str, Any] = {
            "live_url": current.live_url,
            "last_error": current.last_error,
            "port": current.port,
            "installed_by": current.installed_by,
            "attempt_id": current.attempt_id,
            "attempt_started_at": current.attempt_started_at,
        }
        if target is InstallState.INSTALLING:
            values["attempt_id"] = current.attempt_id + 1
            values["attempt_started_at"] = now
            values["live_url"] = None
            values["last_error"] = None
        elif target is InstallState.RUNNING:
            values["last_error"] = None
        elif target is InstallState.STOPPED:
            values["live_url"] = None
        elif target is InstallState.NOT_INSTALLED:
            values["live_url"] = None
            values["last_error"] = None
            values["port"] = None
        values.update(updates)

        error_json = (
            json.dumps(values["last_error"], ensure_ascii=False)
            if values["last_error"] is not None
            else None
        )
        params = (
            target.value,
            values["attempt_id"],
            values["live_url"],
            error_json,
            values["port"],
            values["installed_by"],
            values["attempt_started_at"],
        )

        if stored is None:
            conn.execute(
                """
                INSERT INTO service_installations (
                    state, attempt_id, live_url, error_json, port, installed_by,
                    attempt_started_at, service_key, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """.strip(),
                (*params, key, now, now),
            )
        else:
            conn.execute(
                """
                UPDATE service_installations
                SET state = ?, attempt_id = ?, live_url = ?, error_json = ?, port = ?,
                    installed_by = ?, attempt_started_at = ?, updated_at = ?
                WHERE service_key = ?;
                """.strip(),
                (*params, now, key),
            )

        result = _select_one(conn, key)
        conn.execute("COMMIT;")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK;")
        raise
    finally:
        conn.close()

    if result is None:
        raise RuntimeError("Failed to read installation after transition")
    return result


def fail_interrupted_installs(db_path, *, message: str = "Install interrupted by restart") -> list[str]:
    """Mark every row stuck in `installing` as failed and return the affected keys.

    Used at startup: no worker from a previous process can still report back.
    """

    stuck = list_installations(db_path, states=[InstallState.INSTALLING])
    failed: list[str] = []
    for key, row in stuck.items():
        try:
            transition(
                db_path,
                key=key,
                expected=InstallState.INSTALLING,
                new_state=InstallState.FAILED,
                attempt_id=row.attempt_id,
                fields={"last_error": {"code": "interrupted", "message": message}},
            )
        except ConflictError:
            continue
        failed.append(key)
    return failed
