"""
PKCS#10 CSR 校验的核心逻辑。
包括解析 CSR、验证持有证明、提取主题、比对身份属性、检查密钥强度以及公钥重复使用检测。
"""

import base64
import hashlib
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID
from loguru import logger

from src.ra.auth.schemas import IdentityClaims
from src.ra.errors import FormatError
from .key_registry import PublicKeyRegistry
from .schemas import CertificateType, SubjectFields, ValidationResult

DEFAULT_RSA_MIN_BITS = 2048
STRONG_RSA_MIN_BITS = 3072
EC_MIN_BITS = 256

_STRONG_KEY_TYPES = {CertificateType.CODE_SIGNING, CertificateType.SERVER_AUTHENTICATION}


def parse_csr(csr_input: str) -> x509.CertificateSigningRequest:
    """
    解析 PEM 格式的 CSR，也兼容 Base64 编码的 PEM/DER。
    :param csr_input: CSR 文本。
    :return: 解析得到的 CSR 对象。
    :raises FormatError: 无法解析时。
    """
    if not csr_input or not csr_input.strip():
        raise FormatError("CSR 内容不能为空")
    text = csr_input.strip()

    if "-----BEGIN" in text:
        try:
            return x509.load_pem_x509_csr(text.encode("utf-8"))
        except Exception as e:
            logger.warning(f"解析 PEM CSR 失败: {e}")
            raise FormatError("无效的 PKCS#10 CSR 格式")

    try:
        decoded = base64.b64decode(text, validate=True)
        try:
            return x509.load_pem_x509_csr(decoded)
        except Exception:
            return x509.load_der_x509_csr(decoded)
    except Exception as e:
        logger.warning(f"解析 Base64 CSR 失败: {e}")
        raise FormatError("无效的 PKCS#10 CSR 格式")


def to_pem(csr: x509.CertificateSigningRequest) -> str:
    return csr.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def verify_proof_of_possession(csr: x509.CertificateSigningRequest) -> bool:
    """
    CSR 的自签名必须能用其自身携带的公钥验证通过，以证明申请者持有私钥。
    """
    try:
        valid = csr.is_signature_valid
    except Exception as e:
        logger.error(f"验证 CSR 签名时出错: {e}")
        return False
    if not valid:
        logger.warning("CSR 签名验证失败")
    return valid


def _get_attr(name: x509.Name, oid: x509.ObjectIdentifier) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    if not attrs:
        return None
    value = attrs[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else value


def extract_subject(csr: x509.CertificateSigningRequest) -> SubjectFields:
    subject = csr.subject
    fields = SubjectFields(
        common_name=_get_attr(subject, NameOID.COMMON_NAME),
        email=_get_attr(subject, NameOID.EMAIL_ADDRESS),
        organizational_unit=_get_attr(subject, NameOID.ORGANIZATIONAL_UNIT_NAME),
        organization=_get_attr(subject, NameOID.ORGANIZATION_NAME),
        country=_get_attr(subject, NameOID.COUNTRY_NAME),
        raw_dn=subject.rfc4514_string(),
    )
    logger.debug(f"CSR 主题: {fields.raw_dn}")
    return fields


def validate_subject_against_identity(subject: SubjectFields, identity: IdentityClaims) -> ValidationResult:
    """
    将 CSR 主题与身份属性比对。
    CN 必须存在且等于身份的显示名；CSR 中出现的 email/OU/O 必须与身份属性一致。
    所有不一致都会被收集到同一个结果中。
    """
    result = ValidationResult()

    if not subject.common_name or not subject.common_name.strip():
        result.errors.append("通用名称 (CN) 不能为空")
    elif subject.common_name != identity.display_name:
        result.errors.append(
            f"通用名称 (CN) 与身份信息不符: 期望 '{identity.display_name}'，实际 '{subject.common_name}'"
        )

    optional_fields = (
        ("电子邮件", subject.email, identity.email),
        ("组织单位 (OU)", subject.organizational_unit, identity.organizational_unit),
        ("组织 (O)", subject.organization, identity.organization),
    )
    for label, requested, expected in optional_fields:
        if requested and requested != expected:
            result.errors.append(f"{label} 与身份信息不符: 期望 '{expected}'，实际 '{requested}'")

    if result.valid:
        logger.info(f"主题校验通过: {identity.username}")
    else:
        logger.warning(f"主题校验失败: {identity.username}, errors={result.errors}")
    return result


def minimum_rsa_key_size(certificate_type: str) -> int:
    """代码签名与服务器认证证书要求 3072 位，其余（含未知类型）2048 位。"""
    if CertificateType.parse(certificate_type) in _STRONG_KEY_TYPES:
        return STRONG_RSA_MIN_BITS
    return DEFAULT_RSA_MIN_BITS


def validate_key_strength(csr: x509.CertificateSigningRequest, certificate_type: str) -> ValidationResult:
    result = ValidationResult()
    try:
        public_key = csr.public_key()
        if isinstance(public_key, rsa.RSAPublicKey):
            min_bits = minimum_rsa_key_size(certificate_type)
            if public_key.key_size < min_bits:
                result.errors.append(
                    f"RSA 密钥长度不足: 证书类型 '{certificate_type}' 至少需要 {min_bits} 位，实际 {public_key.key_size} 位"
                )
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            if public_key.curve.key_size < EC_MIN_BITS:
                result.errors.append(
                    f"EC 密钥长度不足: 至少需要 {EC_MIN_BITS} 位，实际 {public_key.curve.key_size} 位"
                )
        else:
            result.errors.append(f"不支持的密钥算法: {type(public_key).__name__}（仅支持 RSA 与 EC）")
    except Exception as e:
        logger.error(f"校验密钥参数时出错: {e}")
        result.errors.append(f"无法校验密钥参数: {e}")
    return result


def public_key_fingerprint(public_key) -> str:
    """公钥 DER 编码 SubjectPublicKeyInfo 的 SHA-256，小写十六进制。"""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def csr_fingerprint(csr: x509.CertificateSigningRequest) -> str:
    return public_key_fingerprint(csr.public_key())


class CSRValidator:
    """把上述校验步骤与公钥登记表组合在一起。"""

    def __init__(self, registry: PublicKeyRegistry):
        self._registry = registry

    parse = staticmethod(parse_csr)
    verify_proof_of_possession = staticmethod(verify_proof_of_possession)
    extract_subject = staticmethod(extract_subject)
    validate_subject_against_identity = staticmethod(validate_subject_against_identity)
    validate_key_strength = staticmethod(validate_key_strength)
    to_pem = staticmethod(to_pem)
    fingerprint = staticmethod(public_key_fingerprint)

    def is_key_reused(self, csr: x509.CertificateSigningRequest) -> bool:
        """
        公钥是否已被使用或列入黑名单。检查过程中出现任何错误都按"已使用"处理。
        """
        try:
            fingerprint = csr_fingerprint(csr)
            used = self._registry.is_used(fingerprint)
        except Exception as e:
            logger.error(f"检查公钥黑名单时出错，按已使用处理: {e}")
            return True
        if used:
            logger.warning(f"公钥已被使用或在黑名单中: {fingerprint}")
        return used
