from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from seedling_core.app import create_app
from seedling_core.catalog import ServiceCatalog, ServiceDefinition
from seedling_core.db.migrate import apply_migrations
from seedling_core.errors import ExecutionError
from seedling_core.executors.base import InstallAttempt


class FakeExecutor:
    """In-memory executor whose `start` calls can be held open per attempt."""

    name = "fake"

    def __init__(self, *, block: bool = False) -> None:
        self.block = block
        self.fail_with: str | None = None
        self.fail_stop_with: str | None = None
        self.live_url: str | None = None
        self.cancel_supported = True
        self.calls: list[tuple[str, str]] = []
        self.canceled: list[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()
        self._gates: dict[str, threading.Event] = {}

    def _gate(self, handle: str) -> threading.Event:
        with self._lock:
            gate = self._gates.get(handle)
            if gate is None:
                gate = threading.Event()
                if not self.block:
                    gate.set()
                self._gates[handle] = gate
            return gate

    def release(self, handle: str | None = None) -> None:
        if handle is not None:
            self._gate(handle).set()
            return
        with self._lock:
            self.block = False
            gates = list(self._gates.values())
        for g in gates:
            g.set()

    def start(self, definition: ServiceDefinition, attempt: InstallAttempt) -> str:
        with self._lock:
            self.calls.append(("start", attempt.handle))
        self.started.set()
        self._gate(attempt.handle).wait(10)
        if self.fail_with is not None:
            raise ExecutionError(self.fail_with)
        return self.live_url or definition.live_url(attempt.port)

    def stop(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        with self._lock:
            self.calls.append(("stop", attempt.handle))
        if self.fail_stop_with is not None:
            raise ExecutionError(self.fail_stop_with)

    def uninstall(self, definition: ServiceDefinition, attempt: InstallAttempt) -> None:
        with self._lock:
            self.calls.append(("uninstall", attempt.handle))

    def cancel(self, attempt: InstallAttempt) -> bool:
        with self._lock:
            self.canceled.append(attempt.handle)
        return self.cancel_supported

    def status(self, attempt: InstallAttempt) -> str | None:
        return "fake"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "db" / "core.sqlite3"
    apply_migrations(path)
    return path


@pytest.fixture
def catalog() -> ServiceCatalog:
    return ServiceCatalog(
        [
            ServiceDefinition(
                key="plex",
                name="Plex",
                description="Media server",
                project_url="https://www.plex.tv",
                default_port=32400,
            ),
            ServiceDefinition(key="jellyfin", name="Jellyfin", description="Media system"),
            ServiceDefinition(key="nextcloud", name="Nextcloud", description="Files"),
        ]
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def client(tmp_path: Path, monkeypatch, fake_executor: FakeExecutor) -> Iterator[TestClient]:
    monkeypatch.setenv("SEEDLING_HOME", str(tmp_path))
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "core.json").write_text(
        json.dumps({"auth": {"bcrypt_rounds": 4}}), encoding="utf-8"
    )

    with TestClient(create_app(executor=fake_executor)) as c:
        yield c


def signup_and_login(
    client: TestClient,
    *,
    email: str = "ada@example.com",
    username: str = "ada",
    password: str = "correct horse",
) -> dict[str, str]:
    r = client.post(
        "/v1/users", json={"email": email, "username": username, "password": password}
    )
    assert r.status_code == 200, r.text
    r = client.post("/v1/users/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def auth_headers(client: TestClient) -> dict[str, str]:
    return signup_and_login(client)


@pytest.fixture
def login(client: TestClient):
    """Register an extra account and return its auth headers."""

    def _login(**kwargs) -> dict[str, str]:
        return signup_and_login(client, **kwargs)

    return _login
