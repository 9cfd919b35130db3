from __future__ import annotations

from fastapi.testclient import TestClient


def test_v1_requires_token(client: TestClient, auth_headers: dict[str, str]) -> None:
    r = client.get("/v1/system/info")
    assert r.status_code == 401
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "unauthorized"
    assert r.headers.get("www-authenticate") == "Bearer"

    r2 = client.get("/v1/system/info", headers=auth_headers)
    assert r2.status_code == 200
    body2 = r2.json()
    assert body2["ok"] is True
    assert body2["error"] is None
    assert body2["data"]["version"]
    assert body2["data"]["executor"] == "fake"
    assert body2["data"]["catalog_size"] == len(client.app.state.catalog)


def test_token_header_is_accepted(client: TestClient, auth_headers: dict[str, str]) -> None:
    token = auth_headers["Authorization"].removeprefix("Bearer ")
    r = client.get("/v1/users", headers={"X-Seedling-Token": token})
    assert r.status_code == 200
    assert r.json()["data"]["username"] == "ada"


def test_garbage_token_is_rejected(client: TestClient) -> None:
    r = client.get("/v1/services/info", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "unauthorized"


def test_docs_and_openapi_are_public(client: TestClient) -> None:
    docs = client.get("/docs")
    assert docs.status_code == 200

    openapi = client.get("/openapi.json")
    assert openapi.status_code == 200
    spec = openapi.json()
    paths = spec.get("paths", {})
    assert "/v1/system/info" in paths
    assert "/v1/services/info" in paths
    assert "/v1/services/install" in paths
    assert "/v1/users/login" in paths

    assert "security" in paths["/v1/system/info"]["get"]
    assert "security" in paths["/v1/services/install"]["post"]
    assert "security" not in paths["/v1/users/login"]["post"]


def test_cors_preflight_from_dashboard(client: TestClient) -> None:
    r = client.options(
        "/v1/users/login",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
        },
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "http://localhost:3000"
