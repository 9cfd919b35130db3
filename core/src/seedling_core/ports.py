from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from seedling_core.config import PortAllocatorConfig
from seedling_core.errors import ConflictError

logger = logging.getLogger(__name__)


def _connect(db_path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def get_allocated_port(db_path, *, key: str) -> int | None:
    conn = _connect(db_path)
    try:
        row = conn.execute(
            "SELECT port FROM port_allocations WHERE service_key = ?;", (key,)
        ).fetchone()
    finally:
        conn.close()
    return int(row["port"]) if row is not None else None


def allocate_port(
    db_path,
    *,
    key: str,
    start_port: int,
    end_port: int,
    preferred: int | None = None,
) -> int:
    """Return the host port owned by `key`, allocating one if it has none yet.

    `preferred` is used when no other key holds it (it may lie outside the range);
    otherwise the lowest free port in [start_port, end_port] is taken.
    """

    conn = _connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        row = conn.execute(
            "SELECT port FROM port_allocations WHERE service_key = ?;", (key,)
        ).fetchone()
        if row is not None:
            conn.execute("COMMIT;")
            return int(row["port"])

        taken = {
            int(r["port"]) for r in conn.execute("SELECT port FROM port_allocations;").fetchall()
        }

        port: int | None = None
        if preferred is not None and preferred not in taken:
            port = preferred
        else:
            for candidate in range(start_port, end_port + 1):
                if candidate not in taken:
                    port = candidate
                    break

        if port is None:
            raise ConflictError(
                f"No free port left in {start_port}-{end_port}",
                details={"key": key, "start_port": start_port, "end_port": end_port},
            )

        conn.execute(
            "INSERT INTO port_allocations (port, service_key) VALUES (?, ?);", (port, key)
        )
        conn.execute("COMMIT;")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK;")
        raise
    finally:
        conn.close()

    logger.info("Allocated port %d to %s", port, key)
    return port


def release_port(db_path, *, key: str) -> int | None:
    conn = _connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        row = conn.execute(
            "SELECT port FROM port_allocations WHERE service_key = ?;", (key,)
        ).fetchone()
        conn.execute("DELETE FROM port_allocations WHERE service_key = ?;", (key,))
        conn.execute("COMMIT;")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK;")
        raise
    finally:
        conn.close()
    return int(row["port"]) if row is not None else None


@dataclass(frozen=True)
class PortAllocator:
    db_path: Path
    start_port: int
    end_port: int

    @classmethod
    def from_config(cls, db_path: Path, config: PortAllocatorConfig) -> PortAllocator:
        return cls(db_path=db_path, start_port=config.start_port, end_port=config.end_port)

    def allocate(self, key: str, *, preferred: int | None = None) -> int:
        return allocate_port(
            self.db_path,
            key=key,
            start_port=self.start_port,
            end_port=self.end_port,
            preferred=preferred,
        )

    def lookup(self, key: str) -> int | None:
        return get_allocated_port(self.db_path, key=key)

    def release(self, key: str) -> int | None:
        return release_port(self.db_path, key=key)
