from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any


def _connect(db_path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    return conn


def _loads_json(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


@dataclass(frozen=True)
class ServiceEventRow:
    event_id: int
    key: str
    attempt_id: int | None
    ts: str
    level: str
    message: str
    data: Any


def _event_from_db_row(row: sqlite3.Row) -> ServiceEventRow:
    return ServiceEventRow(
        event_id=int(row["event_id"]),
        key=row["service_key"],
        attempt_id=row["attempt_id"],
        ts=row["ts"],
        level=row["level"],
        message=row["message"],
        data=_loads_json(row["data_json"]),
    )


def append_service_event(
    db_path,
    *,
    key: str,
    level: str,
    message: str,
    attempt_id: int | None = None,
    data: Any | None = None,
) -> ServiceEventRow:
    data_json = json.dumps(data, ensure_ascii=False) if data is not None else None

    with _connect(db_path) as conn:
        cur = conn.execute(
            """
            INSERT INTO service_events (service_key, attempt_id, level, message, data_json)
            VALUES (?, ?, ?, ?, ?);
            """.strip(),
            (key, attempt_id, level, message, data_json),
        )
        if cur.lastrowid is None:
            raise RuntimeError("Failed to insert service event")
        event_id = int(cur.lastrowid)

        row = conn.execute(
            """
            SELECT event_id, service_key, attempt_id, ts, level, message, data_json
            FROM service_events
            WHERE event_id = ?;
            """.strip(),
            (event_id,),
        ).fetchone()

    if row is None:
        raise RuntimeError("Failed to read service event after insert")

    return _event_from_db_row(row)


def list_service_events(
    db_path,
    *,
    key: str,
    after_id: int = 0,
    limit: int = 500,
) -> list[ServiceEventRow]:
    with _connect(db_path) as conn:
        rows = conn.execute(
            """
            SELECT event_id, service_key, attempt_id, ts, level, message, data_json
            FROM service_events
            WHERE service_key = ? AND event_id > ?
            ORDER BY event_id ASC
            LIMIT ?;
            """.strip(),
            (key, after_id, limit),
        ).fetchall()

    return [_event_from_db_row(r) for r in rows]
