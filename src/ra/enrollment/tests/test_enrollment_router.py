"""
测试证书申请路由：状态码映射与 camelCase 响应。
"""

from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.ra.deps import build_context, get_context
from src.ra.enrollment.router import router
from src.ra.enrollment.schemas import IssuedCertificate
from src.ra.errors import ExternalServiceError


def _client_for(context) -> TestClient:
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_context] = lambda: context
    return TestClient(app)


@pytest.fixture
def client(ctx):
    return _client_for(ctx)


@pytest.fixture
def auth(token_for):
    def _auth(username: str) -> dict:
        return {"Authorization": f"Bearer {token_for(username)}"}

    return _auth


@pytest.fixture
def alice_csr(make_csr):
    return make_csr(common_name="Alice Zhang")[0]


def _submit(client, headers, csr_pem, certificate_type="EMAIL_SIGNING"):
    return client.post(
        "/certificates/requests",
        json={"csrPem": csr_pem, "certificateType": certificate_type},
        headers=headers,
    )


def test_submit_requires_token(client, alice_csr):
    resp = _submit(client, {}, alice_csr)
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"


def test_submit_and_download(client, auth, alice_csr):
    resp = _submit(client, auth("alice"), alice_csr)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ISSUED"
    assert body["autoApproved"] is True
    assert body["subjectDN"] == "CN=Alice Zhang"
    request_id = body["requestId"]

    status_resp = client.get(f"/certificates/requests/{request_id}", headers=auth("alice"))
    assert status_resp.status_code == 200
    assert status_resp.json()["certificateSerialNumber"]

    download = client.get(f"/certificates/requests/{request_id}/certificate", headers=auth("alice"))
    assert download.status_code == 200
    assert download.json()["certificatePem"].startswith("-----BEGIN CERTIFICATE-----")


@pytest.mark.parametrize(
    "csr_kind, certificate_type, expected",
    [
        ("garbage", "EMAIL_SIGNING", 400),
        ("mismatch", "EMAIL_SIGNING", 400),
        ("valid", "CODE_SIGNING", 403),
    ],
)
def test_submit_error_status_codes(client, auth, make_csr, csr_kind, certificate_type, expected):
    csr_pem = {
        "garbage": "not a csr",
        "mismatch": make_csr(common_name="Somebody Else")[0],
        "valid": make_csr(common_name="Alice Zhang")[0],
    }[csr_kind]
    assert _submit(client, auth("alice"), csr_pem, certificate_type).status_code == expected


def test_submit_missing_fields_is_unprocessable(client, auth):
    resp = client.post("/certificates/requests", json={"certificateType": "EMAIL_SIGNING"}, headers=auth("alice"))
    assert resp.status_code == 422


def test_duplicate_key_conflicts(client, auth, make_key, make_csr):
    key = make_key()
    assert _submit(client, auth("alice"), make_csr(key)[0]).status_code == 201
    assert _submit(client, auth("alice"), make_csr(key)[0]).status_code == 409


def test_manual_review_flow(client, auth, alice_csr):
    request_id = _submit(client, auth("alice"), alice_csr, "DOCUMENT_SIGNING").json()["requestId"]

    assert client.get(f"/certificates/requests/{request_id}/certificate", headers=auth("alice")).status_code == 409
    assert client.post(f"/certificates/requests/{request_id}/approve", headers=auth("alice")).status_code == 403

    resp = client.post(
        f"/certificates/requests/{request_id}/approve", json={"comments": "ok"}, headers=auth("olivia"),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "ISSUED"
    assert resp.json()["approvedBy"] == "olivia"

    again = client.post(f"/certificates/requests/{request_id}/reject", json={"reason": "late"}, headers=auth("olivia"))
    assert again.status_code == 409


def test_reject(client, auth, alice_csr):
    request_id = _submit(client, auth("alice"), alice_csr, "DOCUMENT_SIGNING").json()["requestId"]
    resp = client.post(
        f"/certificates/requests/{request_id}/reject", json={"reason": "no business need"}, headers=auth("adam"),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "REJECTED"
    assert resp.json()["rejectionReason"] == "no business need"


def test_list_requests(client, auth, alice_csr):
    _submit(client, auth("alice"), alice_csr, "DOCUMENT_SIGNING")

    assert client.get("/certificates/requests", headers=auth("alice")).status_code == 403
    resp = client.get("/certificates/requests", params={"status": "PENDING"}, headers=auth("audrey"))
    assert resp.status_code == 200
    assert resp.json()["totalCount"] == 1
    assert resp.json()["requests"][0]["username"] == "alice"

    assert client.get("/certificates/requests", params={"status": "LOST"}, headers=auth("audrey")).status_code == 400
    assert client.get("/certificates/requests", params={"size": 0}, headers=auth("audrey")).status_code == 422


def test_unknown_request_is_404(client, auth):
    assert client.get("/certificates/requests/REQ-missing", headers=auth("adam")).status_code == 404
    resp = client.post("/certificates/unknown-serial/revoke", json={"reason": "x"}, headers=auth("adam"))
    assert resp.status_code == 404


def test_revoke(client, ctx, auth, alice_csr):
    request_id = _submit(client, auth("alice"), alice_csr).json()["requestId"]
    serial = ctx.ledger.get(request_id).certificate_serial_number

    assert client.post(f"/certificates/{serial}/revoke", json={"reason": "lost"}, headers=auth("alice")).status_code == 403

    resp = client.post(f"/certificates/{serial}/revoke", json={"reason": "lost"}, headers=auth("olivia"))
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["revokedAt"]

    again = client.post(f"/certificates/{request_id}/revoke", json={"reason": "lost"}, headers=auth("olivia"))
    assert again.status_code == 409


def test_ca_outage_and_manual_resubmission(settings, directory, alice_csr):
    ca = MagicMock()
    ca.submit.side_effect = ExternalServiceError("连接超时")
    context = build_context(settings, identity_provider=directory, ca_connector=ca)
    client = _client_for(context)

    def headers(username):
        return {"Authorization": f"Bearer {context.tokens.issue(directory.get_identity(username))}"}

    resp = _submit(client, headers("alice"), alice_csr)
    assert resp.status_code == 201
    assert resp.json()["status"] == "APPROVED"
    request_id = resp.json()["requestId"]

    failed = client.post(f"/certificates/requests/{request_id}/submit-to-ca", headers=headers("olivia"))
    assert failed.status_code == 500
    assert failed.json()["detail"].startswith("CA 服务调用失败")

    ca.submit.side_effect = None
    ca.submit.return_value = IssuedCertificate(serial_number="0abc", certificate_pem="PEM")
    ok = client.post(f"/certificates/requests/{request_id}/submit-to-ca", headers=headers("olivia"))
    assert ok.status_code == 200
    assert ok.json()["status"] == "ISSUED"
    assert ok.json()["certificateSerialNumber"] == "0abc"


def test_unexpected_error_is_500(client, ctx, auth, monkeypatch):
    monkeypatch.setattr(ctx.enrollment, "get_request", MagicMock(side_effect=RuntimeError("boom")))
    resp = client.get("/certificates/requests/REQ-1", headers=auth("alice"))
    assert resp.status_code == 500
    assert "boom" in resp.json()["detail"]
