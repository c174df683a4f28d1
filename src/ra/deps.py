"""
组件装配：根据配置构建 RA 的全部服务实例。

路由层通过 get_context() 获取同一组实例；测试中可以用 build_context() 构造独立实例，
再通过 app.dependency_overrides 注入。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from loguru import logger

from src.ra.audit.trail import AuditTrail
from src.ra.auth.challenge_store import ChallengeStore
from src.ra.auth.identity import IdentityProvider, StaticDirectory
from src.ra.auth.services import AuthService
from src.ra.auth.tokens import TokenService
from src.ra.config import Config, config
from src.ra.csr.core import CSRValidator
from src.ra.csr.key_registry import PublicKeyRegistry
from src.ra.csr.services import BlacklistService
from src.ra.enrollment.ca_connector import CAConnector, HttpCAConnector, LocalCAConnector
from src.ra.enrollment.ledger import CertificateRequestLedger
from src.ra.enrollment.services import EnrollmentService


@dataclass
class RAContext:
    settings: Config
    audit: AuditTrail
    challenges: ChallengeStore
    tokens: TokenService
    identity_provider: IdentityProvider
    registry: PublicKeyRegistry
    ledger: CertificateRequestLedger
    ca: CAConnector
    auth: AuthService
    enrollment: EnrollmentService
    blacklist: BlacklistService


def build_ca_connector(settings: Config) -> CAConnector:
    if settings.ca_mode == "remote":
        logger.info(f"使用远程 CA: {settings.ca_base_url}")
        return HttpCAConnector(
            settings.ca_base_url,
            settings.ca_username,
            settings.ca_password,
            timeout=settings.ca_timeout_seconds,
        )
    logger.info("使用本地开发 CA")
    return LocalCAConnector(
        settings.dev_ca_dir,
        common_name=settings.ca_root_common_name,
        organization_name=settings.ca_root_organization_name,
    )


def build_identity_provider(settings: Config) -> IdentityProvider:
    if settings.directory_file:
        return StaticDirectory.from_file(settings.directory_file)
    logger.warning("未配置 directory_file，身份目录为空，所有认证都会失败")
    return StaticDirectory([])


def build_context(
    settings: Optional[Config] = None,
    identity_provider: Optional[IdentityProvider] = None,
    ca_connector: Optional[CAConnector] = None,
) -> RAContext:
    settings = settings or config
    audit = AuditTrail(settings.audit_log_file)
    challenges = ChallengeStore(
        ttl=timedelta(seconds=settings.challenge_ttl_seconds),
        sweep_interval=settings.challenge_sweep_interval_seconds,
    )
    tokens = TokenService(
        settings.jwt_secret,
        expiration=timedelta(seconds=settings.jwt_expiration_seconds),
        issuer=settings.jwt_issuer,
    )
    identity_provider = identity_provider or build_identity_provider(settings)
    registry = PublicKeyRegistry()
    ledger = CertificateRequestLedger(
        registry, audit, document_signing_group=settings.document_signing_group,
    )
    ca = ca_connector or build_ca_connector(settings)

    return RAContext(
        settings=settings,
        audit=audit,
        challenges=challenges,
        tokens=tokens,
        identity_provider=identity_provider,
        registry=registry,
        ledger=ledger,
        ca=ca,
        auth=AuthService(challenges, identity_provider, tokens, audit),
        enrollment=EnrollmentService(CSRValidator(registry), ledger, identity_provider, ca, audit),
        blacklist=BlacklistService(registry, audit),
    )


@lru_cache(maxsize=1)
def get_context() -> RAContext:
    return build_context()
