"""
测试 CA 接入层：HTTP 客户端（使用 httpx.MockTransport）与本地开发 CA。
"""

import base64
import json

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from src.ra.enrollment.ca_connector import HttpCAConnector, LocalCAConnector
from src.ra.errors import ExternalServiceError, NotFoundError


def _connector(handler) -> HttpCAConnector:
    return HttpCAConnector(
        "https://ca.example.com/api/v1", "ra-user", "ra-pass",
        timeout=5.0, transport=httpx.MockTransport(handler),
    )


def test_submit_posts_csr_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"certificateSerialNumber": "0a1b", "certificatePem": "PEM"})

    issued = _connector(handler).submit("REQ-1", "CSR", "CN=Alice", "EMAIL_SIGNING", "alice")

    assert issued.serial_number == "0a1b"
    assert issued.certificate_pem == "PEM"
    assert seen["url"] == "https://ca.example.com/api/v1/certificates/issue"
    assert seen["auth"] == "Basic " + base64.b64encode(b"ra-user:ra-pass").decode()
    assert seen["body"]["requestId"] == "REQ-1"
    assert seen["body"]["certificateType"] == "EMAIL_SIGNING"


def test_retrieve_revoke_and_status():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path.endswith("/certificates/REQ-1"):
            return httpx.Response(200, json={"certificatePem": "PEM"})
        if request.method == "POST" and path.endswith("/certificates/0a1b/revoke"):
            body = json.loads(request.content)
            assert body == {"reason": "keyCompromise", "revokedBy": "olivia"}
            return httpx.Response(200, json={"status": "REVOKED"})
        if path.endswith("/certificates/0a1b/status"):
            return httpx.Response(200, json={"status": "REVOKED"})
        return httpx.Response(404, json={})

    connector = _connector(handler)
    assert connector.retrieve("REQ-1") == "PEM"
    assert connector.revoke("0a1b", "keyCompromise", "olivia") is True
    assert connector.check_status("0a1b") == "REVOKED"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="boom"),
        httpx.Response(401, json={"error": "unauthorized"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["unexpected", "shape"]),
        httpx.Response(200, json={"certificatePem": "PEM"}),
    ],
)
def test_submit_failures_become_external_errors(response):
    connector = _connector(lambda request: response)
    with pytest.raises(ExternalServiceError):
        connector.submit("REQ-1", "CSR", "CN=Alice", "EMAIL_SIGNING", "alice")


def test_transport_error_becomes_external_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalServiceError):
        _connector(handler).revoke("0a1b", "reason", "olivia")


# ── 本地开发 CA ───────────────────────────────────────


def test_local_ca_issues_certificate(tmp_path, make_csr):
    ca = LocalCAConnector(tmp_path / "dev_ca", common_name="Test Root CA")
    pem, key = make_csr(common_name="Alice Zhang")

    issued = ca.submit("REQ-1", pem, "CN=Alice Zhang", "EMAIL_SIGNING", "alice")
    cert = x509.load_pem_x509_certificate(issued.certificate_pem.encode())
    ca_cert = x509.load_pem_x509_certificate(ca.ca_certificate_pem().encode())

    assert cert.subject.rfc4514_string() == "CN=Alice Zhang"
    assert cert.issuer == ca_cert.subject
    assert format(cert.serial_number, "x") == issued.serial_number
    assert cert.public_key().public_numbers() == key.public_key().public_numbers()
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.EMAIL_PROTECTION in eku
    ca_cert.public_key().verify(cert.signature, cert.tbs_certificate_bytes, ec.ECDSA(hashes.SHA256()))

    assert ca.retrieve("REQ-1") == issued.certificate_pem
    assert ca.check_status(issued.serial_number) == "VALID"


def test_local_ca_persists_root_and_serials(tmp_path, make_csr):
    ca_dir = tmp_path / "dev_ca"
    first = LocalCAConnector(ca_dir)
    a = first.submit("REQ-1", make_csr()[0], "CN=Alice Zhang", "USER_AUTHENTICATION", "alice")
    b = first.submit("REQ-2", make_csr()[0], "CN=Alice Zhang", "USER_AUTHENTICATION", "alice")
    assert a.serial_number != b.serial_number

    second = LocalCAConnector(ca_dir)
    assert second.ca_certificate_pem() == first.ca_certificate_pem()
    c = second.submit("REQ-3", make_csr()[0], "CN=Alice Zhang", "USER_AUTHENTICATION", "alice")
    assert c.serial_number not in (a.serial_number, b.serial_number)


def test_local_ca_revocation(tmp_path, make_csr):
    ca = LocalCAConnector(tmp_path / "dev_ca")
    issued = ca.submit("REQ-1", make_csr()[0], "CN=Alice Zhang", "USER_AUTHENTICATION", "alice")

    assert ca.revoke(issued.serial_number, "keyCompromise", "olivia") is True
    assert ca.check_status(issued.serial_number) == "REVOKED"
    assert ca.check_status("ffff") is None
    with pytest.raises(ExternalServiceError):
        ca.revoke("ffff", "reason", "olivia")
    with pytest.raises(NotFoundError):
        ca.retrieve("REQ-unknown")


def test_local_ca_rejects_garbage_csr(tmp_path):
    ca = LocalCAConnector(tmp_path / "dev_ca")
    with pytest.raises(ExternalServiceError):
        ca.submit("REQ-1", "garbage", "CN=x", "USER_AUTHENTICATION", "alice")


def test_local_ca_copies_only_subject_alternative_name(tmp_path):
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Alice Zhang")]))
        .add_extension(x509.SubjectAlternativeName([x509.RFC822Name("alice@example.com")]), critical=False)
        .add_extension(
            x509.NameConstraints(permitted_subtrees=[x509.DNSName("example.com")], excluded_subtrees=None),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode()

    issued = LocalCAConnector(tmp_path / "dev_ca").submit("REQ-1", csr_pem, "CN=Alice Zhang", "EMAIL_SIGNING", "alice")

    cert = x509.load_pem_x509_certificate(issued.certificate_pem.encode())
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.RFC822Name) == ["alice@example.com"]
    with pytest.raises(x509.ExtensionNotFound):
        cert.extensions.get_extension_for_class(x509.NameConstraints)
