"""
测试认证路由：请求挑战、登录、校验令牌与登出。
"""

import base64
import inspect

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.ra.audit.schemas import AuditAction
from src.ra.auth.identity import build_challenge_response
from src.ra.auth.router import router
from src.ra.deps import get_context


@pytest.fixture
def client(ctx):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_context] = lambda: ctx
    return TestClient(app)


def _login(client, username: str, password: str):
    resp = client.post("/auth/challenge", json={"username": username})
    assert resp.status_code == 200
    body = resp.json()
    answer = build_challenge_response(password, base64.b64decode(body["challenge"]), base64.b64decode(body["salt"]))
    return client.post("/auth/login", json={
        "username": username,
        "challengeId": body["challengeId"],
        "encryptedResponse": answer,
    })


def test_challenge_endpoint_returns_camel_case(client):
    resp = client.post("/auth/challenge", json={"username": "alice"})

    assert resp.status_code == 200
    assert set(resp.json()) == {"challengeId", "challenge", "salt", "expiresAt"}


def test_challenge_endpoint_rejects_blank_username(client):
    resp = client.post("/auth/challenge", json={"username": ""})
    assert resp.status_code == 400


def test_login_and_verify(client):
    resp = _login(client, "adam", "adam-pass")

    assert resp.status_code == 200
    body = resp.json()
    assert body["tokenType"] == "Bearer"
    assert body["username"] == "adam"
    assert body["roles"] == ["RA_ADMIN", "REQUESTER"]

    verify = client.post("/auth/verify", json={"token": body["token"]})
    assert verify.json() == {"valid": True, "username": "adam"}


def test_login_with_wrong_password_returns_401(client):
    resp = _login(client, "adam", "wrong")
    assert resp.status_code == 401


def test_login_with_unknown_challenge_returns_401(client):
    resp = client.post("/auth/login", json={
        "username": "adam",
        "challengeId": "missing",
        "encryptedResponse": "AAAA",
    })
    assert resp.status_code == 401


def test_verify_invalid_token(client):
    resp = client.post("/auth/verify", json={"token": "garbage"})
    assert resp.status_code == 200
    assert resp.json() == {"valid": False, "username": None}


def test_logout_records_client_info(client, ctx, token_for):
    token = token_for("alice")
    resp = client.post(
        "/auth/logout",
        json={"token": token},
        headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "ra-cli/1.0"},
    )

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    record = ctx.audit.records(action=AuditAction.LOGOUT.value)[0]
    assert record.ip_address == "203.0.113.7"
    assert record.user_agent == "ra-cli/1.0"
    # 登出后令牌依然有效
    assert client.post("/auth/verify", json={"token": token}).json()["valid"] is True


def test_login_request_validation_error(client):
    resp = client.post("/auth/login", json={"username": "alice"})
    assert resp.status_code == 422


def test_endpoints_run_in_threadpool():
    # 口令派生是阻塞计算，端点必须是普通函数，由 FastAPI 放入线程池执行
    endpoints = {route.path: route.endpoint for route in router.routes}
    assert set(endpoints) == {"/auth/challenge", "/auth/login", "/auth/verify", "/auth/logout"}
    for path, endpoint in endpoints.items():
        assert not inspect.iscoroutinefunction(endpoint), path
