from __future__ import annotations

import time

from fastapi.testclient import TestClient

from seedling_core.auth import register_user


def _wait_for_status(
    client: TestClient, headers: dict[str, str], key: str, status: str, *, timeout_s: float = 10.0
) -> dict:
    start = time.time()
    while True:
        r = client.get(f"/v1/services/info/{key}", headers=headers)
        assert r.status_code == 200
        data = r.json()["data"]
        if data["status"] == status:
            return data
        if time.time() - start > timeout_s:
            raise AssertionError(f"Timed out waiting for {key} to reach {status} (now {data['status']})")
        time.sleep(0.05)


def test_services_require_login(client: TestClient) -> None:
    for path in ("/v1/services/info", "/v1/services/installed", "/v1/services/info/plex"):
        r = client.get(path)
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "unauthorized"

    r = client.post("/v1/services/install", json={"key": "plex"})
    assert r.status_code == 401


def test_info_lists_whole_catalog_as_available(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    r = client.get("/v1/services/info", headers=auth_headers)
    assert r.status_code == 200
    items = r.json()["data"]
    assert [s["key"] for s in items] == client.app.state.catalog.keys()
    for s in items:
        assert s["status"] == "not_installed"
        assert s["is_available"] is True
        assert s["is_installed"] is False
        assert s["is_running"] is False


def test_unknown_service_is_404(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.get("/v1/services/info/minecraft", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"

    r2 = client.post("/v1/services/install", json={"key": "minecraft"}, headers=auth_headers)
    assert r2.status_code == 404


def test_install_plex_end_to_end(
    client: TestClient, auth_headers: dict[str, str], fake_executor
) -> None:
    fake_executor.block = True

    r = client.post("/v1/services/install", json={"key": "plex"}, headers=auth_headers)
    assert r.status_code == 200
    accepted = r.json()["data"]
    assert accepted["status"] == "installing"
    assert accepted["attempt_id"] == 1
    assert accepted["live_url"] is None
    assert accepted["service"]["is_installed"] is True
    assert accepted["service"]["is_available"] is False

    # A second request while the first is in flight is rejected.
    dup = client.post("/v1/services/install", json={"key": "plex"}, headers=auth_headers)
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "conflict"

    fake_executor.release()
    running = _wait_for_status(client, auth_headers, "plex", "running")
    assert running["is_running"] is True

    installed = client.get("/v1/services/installed", headers=auth_headers)
    assert installed.status_code == 200
    items = installed.json()["data"]
    assert [i["service"]["key"] for i in items] == ["plex"]
    assert items[0]["live_url"] == "http://localhost:32400/web"

    one = client.get("/v1/services/installed/plex", headers=auth_headers)
    assert one.status_code == 200
    assert one.json()["data"]["executor_status"] == "fake"

    again = client.post("/v1/services/install", json={"key": "plex"}, headers=auth_headers)
    assert again.status_code == 409


def test_install_accepts_legacy_name_field(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    r = client.post("/v1/services/install", json={"name": "jellyfin"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["data"]["service"]["key"] == "jellyfin"
    _wait_for_status(client, auth_headers, "jellyfin", "running")


def test_install_failure_is_reported(
    client: TestClient, auth_headers: dict[str, str], fake_executor
) -> None:
    fake_executor.fail_with = "image pull backoff"

    r = client.post("/v1/services/install", json={"key": "nextcloud"}, headers=auth_headers)
    assert r.status_code == 200

    failed = _wait_for_status(client, auth_headers, "nextcloud", "failed")
    assert failed["is_available"] is True

    detail = client.get("/v1/services/installed/nextcloud", headers=auth_headers).json()["data"]
    assert detail["last_error"] == {"code": "execution_error", "message": "image pull backoff"}

    events = client.get("/v1/services/installed/nextcloud/events", headers=auth_headers)
    assert events.status_code == 200
    messages = [e["message"] for e in events.json()["data"]["items"]]
    assert messages == ["Install started", "Install failed"]

    first_id = events.json()["data"]["items"][0]["event_id"]
    tail = client.get(
        "/v1/services/installed/nextcloud/events",
        params={"after_id": first_id},
        headers=auth_headers,
    ).json()["data"]
    assert [e["message"] for e in tail["items"]] == ["Install failed"]
    assert tail["next_after_id"] > first_id


def test_installed_detail_is_404_until_installed(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    r = client.get("/v1/services/installed/plex", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Service not installed: plex"


def test_viewer_cannot_install(client: TestClient) -> None:
    register_user(
        client.app.state.db_path,
        email="viewer@example.com",
        username="viewer",
        password="just-looking",
        role="viewer",
        bcrypt_rounds=4,
    )
    login = client.post(
        "/v1/users/login", json={"email": "viewer@example.com", "password": "just-looking"}
    )
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    assert client.get("/v1/services/info", headers=headers).status_code == 200

    r = client.post("/v1/services/install", json={"key": "plex"}, headers=headers)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "forbidden"


def test_uninstall_returns_service_to_catalog(
    client: TestClient, auth_headers: dict[str, str], fake_executor
) -> None:
    client.post("/v1/services/install", json={"key": "plex"}, headers=auth_headers)
    _wait_for_status(client, auth_headers, "plex", "running")

    r = client.post("/v1/services/uninstall/plex", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "not_installed"
    assert [c[0] for c in fake_executor.calls] == ["start", "stop", "uninstall"]

    info = client.get("/v1/services/info/plex", headers=auth_headers).json()["data"]
    assert info["is_available"] is True
    assert client.get("/v1/services/installed", headers=auth_headers).json()["data"] == []

    again = client.post("/v1/services/uninstall/plex", headers=auth_headers)
    assert again.status_code == 409


def test_installs_are_shared_between_users(
    client: TestClient, auth_headers: dict[str, str], login
) -> None:
    client.post("/v1/services/install", json={"key": "plex"}, headers=auth_headers)
    _wait_for_status(client, auth_headers, "plex", "running")

    other = login(email="bob@example.com", username="bob")
    info = _wait_for_status(client, other, "plex", "running")
    assert info["is_installed"] is True

    r = client.post("/v1/services/install", json={"key": "plex"}, headers=other)
    assert r.status_code == 409
