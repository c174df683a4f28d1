"""
上游 CA 接入层。

- HttpCAConnector: 通过 HTTP（基本认证）调用外部 CA 服务，单次调用，不自动重试。
- LocalCAConnector: 本地开发用自签 CA，私钥与根证书持久化在 dev_ca_dir 中。
"""

from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from loguru import logger

from src.ra.csr.schemas import CertificateType
from src.ra.errors import ExternalServiceError, NotFoundError
from .schemas import IssuedCertificate


class CAConnector(Protocol):
    def submit(self, request_id: str, csr_pem: str, subject_dn: str,
               certificate_type: str, username: str) -> IssuedCertificate: ...

    def retrieve(self, request_id: str) -> str: ...

    def revoke(self, serial_number: str, reason: str, revoked_by: str) -> bool: ...

    def check_status(self, serial_number: str) -> Optional[str]: ...


class HttpCAConnector:
    """
    外部 CA 的 HTTP 客户端。所有失败（网络错误、非 2xx、响应格式不符）都转换为 ExternalServiceError。
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(username, password),
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, path: str, json: dict | None = None) -> dict:
        try:
            resp = self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.error(f"调用 CA 服务失败: {method} {path}: {e}")
            raise ExternalServiceError(f"无法连接 CA 服务: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error(f"CA 服务返回错误: {method} {path} -> {resp.status_code} {resp.text}")
            raise ExternalServiceError(f"CA 服务返回状态码 {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            logger.error(f"CA 服务响应不是合法的 JSON: {method} {path}")
            raise ExternalServiceError("CA 服务响应格式无效") from e
        if not isinstance(body, dict):
            raise ExternalServiceError("CA 服务响应格式无效")
        return body

    def submit(self, request_id: str, csr_pem: str, subject_dn: str,
               certificate_type: str, username: str) -> IssuedCertificate:
        logger.info(f"向 CA 提交证书请求: {request_id}")
        body = self._call("POST", "/certificates/issue", json={
            "requestId": request_id,
            "csr": csr_pem,
            "subjectDN": subject_dn,
            "certificateType": certificate_type,
            "requestedBy": username,
        })
        serial = body.get("certificateSerialNumber")
        pem = body.get("certificatePem")
        if not serial or not pem:
            logger.error(f"CA 签发响应缺少字段: {list(body.keys())}")
            raise ExternalServiceError("CA 签发响应缺少证书序列号或证书内容")
        logger.info(f"CA 已签发证书: {request_id}, serial={serial}")
        return IssuedCertificate(serial_number=str(serial), certificate_pem=pem)

    def retrieve(self, request_id: str) -> str:
        body = self._call("GET", f"/certificates/{request_id}")
        pem = body.get("certificatePem")
        if not pem:
            raise ExternalServiceError("CA 响应中没有证书内容")
        return pem

    def revoke(self, serial_number: str, reason: str, revoked_by: str) -> bool:
        logger.info(f"向 CA 请求吊销证书: {serial_number}")
        self._call("POST", f"/certificates/{serial_number}/revoke", json={
            "reason": reason,
            "revokedBy": revoked_by,
        })
        return True

    def check_status(self, serial_number: str) -> Optional[str]:
        body = self._call("GET", f"/certificates/{serial_number}/status")
        return body.get("status")


_EKU_BY_TYPE = {
    CertificateType.USER_AUTHENTICATION: [ExtendedKeyUsageOID.CLIENT_AUTH],
    CertificateType.EMAIL_SIGNING: [ExtendedKeyUsageOID.EMAIL_PROTECTION],
    CertificateType.DOCUMENT_SIGNING: [ExtendedKeyUsageOID.EMAIL_PROTECTION, ExtendedKeyUsageOID.CLIENT_AUTH],
    CertificateType.CODE_SIGNING: [ExtendedKeyUsageOID.CODE_SIGNING],
    CertificateType.SERVER_AUTHENTICATION: [ExtendedKeyUsageOID.SERVER_AUTH],
}


class LocalCAConnector:
    """
    开发用本地 CA：首次使用时生成 EC P-256 私钥与 10 年有效期的自签根证书，
    之后为每个 CSR 签发 365 天有效期的终端证书。
    """

    def __init__(
        self,
        ca_dir: str | Path | None = None,
        common_name: str = "RA Development Root CA",
        organization_name: str = "RA Development",
    ):
        self._ca_dir = Path(ca_dir) if ca_dir else Path(os.path.dirname(__file__)) / "dev_ca"
        self._common_name = common_name
        self._organization_name = organization_name
        self._lock = threading.Lock()
        # request_id -> (serial, pem)
        self._issued: Dict[str, Tuple[str, str]] = {}
        self._revoked: Dict[str, str] = {}
        self._ca: Optional[Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]] = None

    @property
    def key_path(self) -> Path:
        return self._ca_dir / "ca_key.pem"

    @property
    def cert_path(self) -> Path:
        return self._ca_dir / "ca_cert.pem"

    @property
    def serial_path(self) -> Path:
        return self._ca_dir / "serial.txt"

    def _load_or_create(self) -> Tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
        if self._ca is not None:
            return self._ca
        self._ca_dir.mkdir(parents=True, exist_ok=True)

        if self.key_path.exists() and self.cert_path.exists():
            ca_key = serialization.load_pem_private_key(self.key_path.read_bytes(), password=None)
            ca_cert = x509.load_pem_x509_certificate(self.cert_path.read_bytes())
            logger.info(f"已加载开发 CA: {self.cert_path}")
            self._ca = (ca_key, ca_cert)
            return self._ca

        ca_key = ec.generate_private_key(ec.SECP256R1())
        subject = x509.Name([
            x509.NameAttribute(NameOID.COUNTRY_NAME, "CN"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, self._organization_name),
            x509.NameAttribute(NameOID.COMMON_NAME, self._common_name),
        ])
        now = datetime.now(timezone.utc)
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(private_key=ca_key, algorithm=hashes.SHA256())
        )

        self.key_path.write_bytes(
            ca_key.private_bytes(
                encoding=Encoding.PEM,
                format=PrivateFormat.PKCS8,
                encryption_algorithm=NoEncryption(),
            )
        )
        self.cert_path.write_bytes(ca_cert.public_bytes(Encoding.PEM))
        self.serial_path.write_text("1\n", encoding="utf-8")
        logger.info(f"已创建开发 CA: {self.cert_path}")

        self._ca = (ca_key, ca_cert)
        return self._ca

    def _next_serial(self) -> int:
        current = 1
        if self.serial_path.exists():
            try:
                current = int(self.serial_path.read_text(encoding="utf-8").strip() or "1")
            except ValueError:
                current = 1
        self.serial_path.write_text(f"{current + 1}\n", encoding="utf-8")
        return current

    def ca_certificate_pem(self) -> str:
        with self._lock:
            _, ca_cert = self._load_or_create()
        return ca_cert.public_bytes(Encoding.PEM).decode("utf-8")

    def submit(self, request_id: str, csr_pem: str, subject_dn: str,
               certificate_type: str, username: str) -> IssuedCertificate:
        try:
            csr = x509.load_pem_x509_csr(csr_pem.encode("utf-8"))
        except ValueError as e:
            raise ExternalServiceError("CA 无法解析 CSR") from e

        parsed_type = CertificateType.parse(certificate_type)
        eku = _EKU_BY_TYPE.get(parsed_type, [ExtendedKeyUsageOID.CLIENT_AUTH])

        with self._lock:
            try:
                ca_key, ca_cert = self._load_or_create()
                serial = self._next_serial()
            except Exception as e:
                logger.error(f"加载/创建开发 CA 失败: {e}")
                raise ExternalServiceError("开发 CA 初始化失败") from e

            now = datetime.now(timezone.utc)
            builder = (
                x509.CertificateBuilder()
                .subject_name(csr.subject)
                .issuer_name(ca_cert.subject)
                .public_key(csr.public_key())
                .serial_number(serial)
                .not_valid_before(now - timedelta(minutes=1))
                .not_valid_after(now + timedelta(days=365))
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_encipherment=True,
                        key_cert_sign=False,
                        crl_sign=False,
                        content_commitment=parsed_type == CertificateType.DOCUMENT_SIGNING,
                        data_encipherment=False,
                        key_agreement=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.ExtendedKeyUsage(eku), critical=False)
            )
            # 只复制 CSR 中请求的主题备用名称，其余扩展由 CA 按证书类型决定
            for ext in csr.extensions:
                if isinstance(ext.value, x509.SubjectAlternativeName):
                    builder = builder.add_extension(ext.value, critical=ext.critical)

            cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
            pem = cert.public_bytes(Encoding.PEM).decode("utf-8")
            serial_number = format(serial, "x")
            self._issued[request_id] = (serial_number, pem)

        logger.info(f"开发 CA 已签发证书: {request_id}, serial={serial_number}, user={username}")
        return IssuedCertificate(serial_number=serial_number, certificate_pem=pem)

    def retrieve(self, request_id: str) -> str:
        with self._lock:
            issued = self._issued.get(request_id)
        if issued is None:
            raise NotFoundError(f"CA 中不存在该请求的证书: {request_id}")
        return issued[1]

    def revoke(self, serial_number: str, reason: str, revoked_by: str) -> bool:
        with self._lock:
            known = any(serial == serial_number for serial, _ in self._issued.values())
            if not known:
                raise ExternalServiceError(f"CA 中不存在该证书: {serial_number}")
            self._revoked[serial_number] = reason
        logger.info(f"开发 CA 已吊销证书: {serial_number}, by={revoked_by}, reason={reason}")
        return True

    def check_status(self, serial_number: str) -> Optional[str]:
        with self._lock:
            if serial_number in self._revoked:
                return "REVOKED"
            if any(serial == serial_number for serial, _ in self._issued.values()):
                return "VALID"
        return None
