"""
RA 测试共用的夹具：测试目录账户、CSR 生成器以及独立装配的服务实例。
"""

from typing import Callable, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID

from src.ra.auth.identity import DirectoryEntry, StaticDirectory
from src.ra.auth.schemas import TokenClaims
from src.ra.config import Config
from src.ra.deps import RAContext, build_context

TEST_JWT_SECRET = "test-secret-key-for-ra-unit-tests-0123456789abcdef"

DIRECTORY_ENTRIES = [
    DirectoryEntry(
        username="alice", password="alice-pass", display_name="Alice Zhang",
        email="alice@example.com", organizational_unit="Engineering", organization="Example Corp",
        country="CN",
    ),
    DirectoryEntry(
        username="bob", password="bob-pass", display_name="Bob Li",
        email="bob@example.com", organization="Example Corp", groups=["Document-Signing"],
    ),
    DirectoryEntry(
        username="olivia", password="olivia-pass", display_name="Olivia Wang",
        email="olivia@example.com", groups=["PKI-RA-Officers"],
    ),
    DirectoryEntry(
        username="oscar", password="oscar-pass", display_name="Oscar Chen",
        groups=["PKI-RA-Operators"],
    ),
    DirectoryEntry(
        username="adam", password="adam-pass", display_name="Adam Liu",
        groups=["PKI-RA-Admins"],
    ),
    DirectoryEntry(
        username="audrey", password="audrey-pass", display_name="Audrey Zhao",
        groups=["PKI-Auditors"],
    ),
    DirectoryEntry(
        username="mallory", password="mallory-pass", display_name="Mallory Sun",
        disabled=True,
    ),
]


def generate_key(kind: str = "ec", size: int = 2048):
    if kind == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=size)
    if kind == "p224":
        return ec.generate_private_key(ec.SECP224R1())
    return ec.generate_private_key(ec.SECP256R1())


def build_csr(
    private_key=None,
    common_name: Optional[str] = "Alice Zhang",
    email: Optional[str] = None,
    organizational_unit: Optional[str] = None,
    organization: Optional[str] = None,
    country: Optional[str] = None,
) -> Tuple[str, object]:
    """生成 CSR，返回 (PEM 文本, 私钥)。"""
    private_key = private_key or generate_key()
    attributes = []
    if country:
        attributes.append(x509.NameAttribute(NameOID.COUNTRY_NAME, country))
    if organization:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    if organizational_unit:
        attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, organizational_unit))
    if email:
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, email))
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .sign(private_key, None if isinstance(private_key, ed25519.Ed25519PrivateKey) else hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("utf-8"), private_key


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory(DIRECTORY_ENTRIES)


@pytest.fixture
def settings(tmp_path) -> Config:
    return Config(
        jwt_secret=TEST_JWT_SECRET,
        dev_ca_dir=str(tmp_path / "dev_ca"),
        ca_mode="local",
        directory_file=None,
        audit_log_file=None,
    )


@pytest.fixture
def ctx(settings, directory) -> RAContext:
    context = build_context(settings, identity_provider=directory)
    yield context
    context.challenges.stop()


@pytest.fixture
def token_for(ctx, directory) -> Callable[[str], str]:
    def _issue(username: str) -> str:
        identity = directory.get_identity(username)
        assert identity is not None, username
        return ctx.tokens.issue(identity)

    return _issue


@pytest.fixture
def claims_for(ctx, token_for) -> Callable[[str], TokenClaims]:
    def _claims(username: str) -> TokenClaims:
        claims = ctx.tokens.verify(token_for(username))
        assert claims is not None
        return claims

    return _claims


@pytest.fixture
def make_key():
    return generate_key


@pytest.fixture
def make_csr():
    return build_csr
