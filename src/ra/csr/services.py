"""
公钥黑名单管理的业务逻辑层，仅 RA 管理员可用。
"""

import re
from typing import Optional

from loguru import logger

from src.ra.audit.schemas import AuditAction, AuditOutcome, ClientInfo
from src.ra.audit.trail import AuditTrail
from src.ra.auth.schemas import Role, TokenClaims
from src.ra.errors import AuthorizationError, NotFoundError, ValidationError
from .key_registry import PublicKeyRegistry
from .schemas import BlacklistAddRequest, BlacklistEntry, BlacklistListResponse

RESOURCE_TYPE = "PUBLIC_KEY"

_FINGERPRINT_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def normalize_fingerprint(value: str) -> str:
    """
    规范化 SHA-256 指纹：去掉冒号与空白并转为小写。
    :raises ValidationError: 不是 64 位十六进制字符串。
    """
    fingerprint = re.sub(r"[\s:]", "", value or "").lower()
    if not _FINGERPRINT_PATTERN.match(fingerprint):
        raise ValidationError("公钥指纹必须是 64 位十六进制的 SHA-256 摘要")
    return fingerprint


class BlacklistService:
    def __init__(self, registry: PublicKeyRegistry, audit: AuditTrail):
        self._registry = registry
        self._audit = audit

    def _require_admin(self, claims: TokenClaims, action: AuditAction, resource_id: Optional[str],
                       client: Optional[ClientInfo]) -> None:
        if not claims.has_role(Role.RA_ADMIN):
            self._audit.record(
                claims.username, action, RESOURCE_TYPE, resource_id,
                AuditOutcome.FAILURE, "缺少 RA_ADMIN 角色", client,
            )
            logger.warning(f"非管理员尝试管理公钥黑名单: {claims.username}")
            raise AuthorizationError("仅 RA 管理员可以管理公钥黑名单")

    def list_entries(self, claims: TokenClaims) -> BlacklistListResponse:
        if not claims.has_role(Role.RA_ADMIN):
            raise AuthorizationError("仅 RA 管理员可以管理公钥黑名单")
        return BlacklistListResponse(entries=self._registry.blacklist())

    def add(self, claims: TokenClaims, req: BlacklistAddRequest,
            client: Optional[ClientInfo] = None) -> BlacklistEntry:
        action = AuditAction.KEY_BLACKLIST_ADD
        self._require_admin(claims, action, req.public_key_hash, client)
        try:
            fingerprint = normalize_fingerprint(req.public_key_hash)
            if not req.reason or not req.reason.strip():
                raise ValidationError("加入黑名单的原因不能为空")
        except ValidationError as e:
            self._audit.record(claims.username, action, RESOURCE_TYPE, req.public_key_hash,
                               AuditOutcome.FAILURE, str(e), client)
            raise

        entry = self._registry.add_to_blacklist(fingerprint, req.reason.strip(), claims.username)
        self._audit.record(claims.username, action, RESOURCE_TYPE, fingerprint,
                           AuditOutcome.SUCCESS, f"原因: {entry.reason}", client)
        return entry

    def remove(self, claims: TokenClaims, public_key_hash: str,
               client: Optional[ClientInfo] = None) -> None:
        """
        :raises NotFoundError: 指纹不在黑名单中。
        """
        action = AuditAction.KEY_BLACKLIST_REMOVE
        self._require_admin(claims, action, public_key_hash, client)
        try:
            fingerprint = normalize_fingerprint(public_key_hash)
        except ValidationError as e:
            self._audit.record(claims.username, action, RESOURCE_TYPE, public_key_hash,
                               AuditOutcome.FAILURE, str(e), client)
            raise
        if not self._registry.remove_from_blacklist(fingerprint):
            self._audit.record(claims.username, action, RESOURCE_TYPE, fingerprint,
                               AuditOutcome.FAILURE, "指纹不在黑名单中", client)
            raise NotFoundError(f"公钥指纹不在黑名单中: {fingerprint}")
        self._audit.record(claims.username, action, RESOURCE_TYPE, fingerprint, AuditOutcome.SUCCESS, None, client)
