from __future__ import annotations

import threading
from pathlib import Path

import pytest

from seedling_core.config import PortAllocatorConfig
from seedling_core.errors import ConflictError
from seedling_core.ports import PortAllocator


def _allocator(db_path: Path, start: int = 30000, end: int = 30002) -> PortAllocator:
    return PortAllocator(db_path=db_path, start_port=start, end_port=end)


def test_allocates_lowest_free_port(db_path: Path) -> None:
    ports = _allocator(db_path)
    assert ports.allocate("jellyfin") == 30000
    assert ports.allocate("nextcloud") == 30001
    assert ports.lookup("jellyfin") == 30000


def test_allocation_is_stable_per_key(db_path: Path) -> None:
    ports = _allocator(db_path)
    first = ports.allocate("jellyfin")
    assert ports.allocate("jellyfin") == first
    assert ports.allocate("jellyfin", preferred=8096) == first


def test_preferred_port_used_when_free(db_path: Path) -> None:
    ports = _allocator(db_path)
    assert ports.allocate("plex", preferred=32400) == 32400
    # Already owned by plex, so the next key falls back to the range.
    assert ports.allocate("other", preferred=32400) == 30000


def test_exhausted_range_conflicts(db_path: Path) -> None:
    ports = _allocator(db_path, start=30000, end=30001)
    ports.allocate("a")
    ports.allocate("b")
    with pytest.raises(ConflictError):
        ports.allocate("c")
    assert ports.lookup("c") is None


def test_release_frees_port_for_reuse(db_path: Path) -> None:
    ports = _allocator(db_path)
    port = ports.allocate("a")
    ports.allocate("b")

    assert ports.release("a") == port
    assert ports.release("a") is None
    assert ports.lookup("a") is None
    assert ports.allocate("c") == port


def test_concurrent_allocations_never_share_a_port(db_path: Path) -> None:
    ports = _allocator(db_path, start=30000, end=30099)
    workers = 10
    barrier = threading.Barrier(workers)
    got: dict[str, int] = {}
    lock = threading.Lock()

    def _alloc(key: str) -> None:
        barrier.wait()
        port = ports.allocate(key)
        with lock:
            got[key] = port

    threads = [threading.Thread(target=_alloc, args=(f"svc-{i}",)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert len(got) == workers
    assert len(set(got.values())) == workers


def test_from_config(db_path: Path) -> None:
    ports = PortAllocator.from_config(db_path, PortAllocatorConfig(start_port=40000, end_port=40010))
    assert ports.allocate("x") == 40000
