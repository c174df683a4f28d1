"""
证书请求台账：持有请求状态机、自动审批策略与证书类型授权策略。

合法的状态迁移：
    PENDING -> APPROVED -> ISSUED -> REVOKED
    PENDING -> REJECTED
其余迁移一律抛出 InvalidStateTransition。每次状态变更（含失败）恰好写入一条审计记录。
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from loguru import logger

from src.ra.audit.schemas import AuditAction, AuditOutcome, ClientInfo
from src.ra.audit.trail import AuditTrail
from src.ra.auth.schemas import IdentityClaims, Role
from src.ra.csr import core as csr_core
from src.ra.csr.key_registry import PublicKeyRegistry
from src.ra.csr.schemas import CertificateType, SubjectFields
from src.ra.errors import ConflictError, InvalidStateTransition, NotFoundError
from .schemas import CertificateRequest, RequestStatus

SYSTEM_USER = "SYSTEM"
RESOURCE_TYPE = "CERTIFICATE_REQUEST"

_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.ISSUED}),
    RequestStatus.ISSUED: frozenset({RequestStatus.REVOKED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.REVOKED: frozenset(),
}

_OPEN_TYPES = {
    CertificateType.USER_AUTHENTICATION,
    CertificateType.EMAIL_SIGNING,
    CertificateType.DOCUMENT_SIGNING,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateRequestLedger:
    def __init__(
        self,
        registry: PublicKeyRegistry,
        audit: AuditTrail,
        document_signing_group: str = "Document-Signing",
        privileged_type_roles: Optional[Mapping[CertificateType, FrozenSet[Role]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._registry = registry
        self._audit = audit
        self._document_signing_group = document_signing_group.lower()
        # 代码签名/服务器认证类型默认没有任何角色可以申请
        self._privileged_type_roles = dict(privileged_type_roles or {})
        self._clock = clock
        self._requests: Dict[str, CertificateRequest] = {}
        self._lock = threading.Lock()
        # 正在向 CA 发起吊销的请求
        self._revoking: Set[str] = set()

    # ── 查询 ──────────────────────────────────────────────

    def get(self, request_id: str) -> CertificateRequest:
        """
        :raises NotFoundError: 请求不存在。
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError(f"证书请求不存在: {request_id}")
            return request.model_copy()

    def get_by_serial(self, serial_number: str) -> CertificateRequest:
        with self._lock:
            for request in self._requests.values():
                if request.certificate_serial_number == serial_number:
                    return request.model_copy()
        raise NotFoundError(f"证书不存在: {serial_number}")

    def list_requests(self, status: Optional[RequestStatus] = None, page: int = 0, size: int = 50
                      ) -> Tuple[List[CertificateRequest], int]:
        """
        按提交时间倒序分页（page 从 0 开始）。
        :return: (当前页的请求, 符合条件的总数)
        """
        with self._lock:
            # 逆序遍历，使提交时间相同的请求仍按创建先后倒序
            matched = [r for r in reversed(list(self._requests.values())) if status is None or r.status == status]
        matched.sort(key=lambda r: r.submitted_at, reverse=True)
        start = max(page, 0) * size
        return [r.model_copy() for r in matched[start:start + size]], len(matched)

    def count(self, status: Optional[RequestStatus] = None) -> int:
        with self._lock:
            return sum(1 for r in self._requests.values() if status is None or r.status == status)

    def list_by_username(self, username: str) -> List[CertificateRequest]:
        with self._lock:
            owned = [r.model_copy() for r in reversed(list(self._requests.values())) if r.username == username]
        return sorted(owned, key=lambda r: r.submitted_at, reverse=True)

    # ── 创建 ──────────────────────────────────────────────

    def submit(
        self,
        username: str,
        csr_pem: str,
        certificate_type: str,
        subject: SubjectFields,
        identity: IdentityClaims,
        comments: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> CertificateRequest:
        """
        创建 PENDING 状态的证书请求并登记公钥指纹。
        指纹计算失败只记录日志，不阻止请求创建。
        :raises ConflictError: 指纹已被其他请求占用或在黑名单中。
        """
        request_id = f"REQ-{uuid.uuid4()}"

        fingerprint: Optional[str] = None
        try:
            fingerprint = csr_core.csr_fingerprint(csr_core.parse_csr(csr_pem))
        except Exception as e:
            logger.error(f"计算公钥指纹失败: {e}")

        if fingerprint is not None:
            try:
                self._registry.claim(fingerprint, request_id)
            except Exception as e:
                self._audit.record(
                    username, AuditAction.CSR_SUBMISSION, RESOURCE_TYPE, request_id,
                    AuditOutcome.FAILURE, f"公钥冲突: {e}", client,
                )
                raise

        request = CertificateRequest(
            request_id=request_id,
            username=username,
            csr_pem=csr_pem,
            certificate_type=certificate_type,
            subject_dn=subject.raw_dn,
            status=RequestStatus.PENDING,
            submitted_at=self._clock(),
            comments=comments,
            public_key_hash=fingerprint,
        )
        with self._lock:
            self._requests[request_id] = request
        self._audit.record(
            username, AuditAction.CSR_SUBMISSION, RESOURCE_TYPE, request_id,
            AuditOutcome.SUCCESS, f"证书类型: {certificate_type}, 主题: {subject.raw_dn}", client,
        )
        logger.info(f"证书请求已创建: {request_id}, user={username}, identity={identity.username}")
        return request.model_copy()

    # ── 状态迁移 ──────────────────────────────────────────

    def _transition(
        self,
        request_id: str,
        target: RequestStatus,
        actor: str,
        action: AuditAction,
        apply: Callable[[CertificateRequest, datetime], None],
        detail: Optional[str],
        client: Optional[ClientInfo],
    ) -> CertificateRequest:
        with self._lock:
            request = self._requests.get(request_id)
            error: Exception | None = None
            if request is None:
                error = NotFoundError(f"证书请求不存在: {request_id}")
            elif target not in _TRANSITIONS[request.status]:
                error = InvalidStateTransition(request_id, request.status.value, target.value)
            else:
                apply(request, self._clock())
                request.status = target
                snapshot = request.model_copy()

        if error is not None:
            self._audit.record(actor, action, RESOURCE_TYPE, request_id, AuditOutcome.FAILURE, str(error), client)
            logger.warning(f"证书请求状态迁移失败: {error}")
            raise error

        self._audit.record(actor, action, RESOURCE_TYPE, request_id, AuditOutcome.SUCCESS, detail, client)
        return snapshot

    def approve(self, request_id: str, approver_id: str, comments: Optional[str] = None,
                client: Optional[ClientInfo] = None) -> CertificateRequest:
        def apply(request: CertificateRequest, now: datetime) -> None:
            request.approved_at = now
            request.approved_by = approver_id

        request = self._transition(
            request_id, RequestStatus.APPROVED, approver_id, AuditAction.REQUEST_APPROVAL,
            apply, f"备注: {comments}" if comments else None, client,
        )
        logger.info(f"证书请求已批准: {request_id}, by={approver_id}")
        return request

    def reject(self, request_id: str, approver_id: str, reason: str,
               client: Optional[ClientInfo] = None) -> CertificateRequest:
        def apply(request: CertificateRequest, now: datetime) -> None:
            request.rejected_at = now
            request.rejected_by = approver_id
            request.rejection_reason = reason

        request = self._transition(
            request_id, RequestStatus.REJECTED, approver_id, AuditAction.REQUEST_REJECTION,
            apply, f"拒绝原因: {reason}", client,
        )
        # 被拒绝的请求不再占用公钥
        if request.public_key_hash:
            self._registry.release(request.public_key_hash, request_id)
        logger.info(f"证书请求已拒绝: {request_id}, by={approver_id}, reason={reason}")
        return request

    def mark_issued(self, request_id: str, serial_number: str, certificate_pem: str,
                    actor: str = SYSTEM_USER, client: Optional[ClientInfo] = None) -> CertificateRequest:
        def apply(request: CertificateRequest, now: datetime) -> None:
            request.issued_at = now
            request.certificate_serial_number = serial_number
            request.certificate_pem = certificate_pem

        request = self._transition(
            request_id, RequestStatus.ISSUED, actor, AuditAction.CERTIFICATE_ISSUANCE,
            apply, f"证书序列号: {serial_number}", client,
        )
        logger.info(f"证书请求已签发: {request_id}, serial={serial_number}")
        return request

    def begin_revocation(self, request_id: str) -> CertificateRequest:
        """
        在调用 CA 吊销之前占用请求，同一证书同时只允许一个吊销流程。
        :raises NotFoundError: 请求不存在。
        :raises ConflictError: 请求不处于 ISSUED 状态，或已有吊销流程在进行。
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError(f"证书请求不存在: {request_id}")
            if request.status != RequestStatus.ISSUED:
                raise ConflictError(f"证书不处于已签发状态，当前状态: {request.status.value}")
            if request_id in self._revoking:
                raise ConflictError(f"证书正在吊销中: {request_id}")
            self._revoking.add(request_id)
            return request.model_copy()

    def end_revocation(self, request_id: str) -> None:
        with self._lock:
            self._revoking.discard(request_id)

    def mark_revoked(self, request_id: str, reason: str, actor: str = SYSTEM_USER,
                     client: Optional[ClientInfo] = None) -> CertificateRequest:
        def apply(request: CertificateRequest, now: datetime) -> None:
            request.revoked_at = now
            request.revocation_reason = reason

        request = self._transition(
            request_id, RequestStatus.REVOKED, actor, AuditAction.CERTIFICATE_REVOCATION,
            apply, f"吊销原因: {reason}", client,
        )
        logger.info(f"证书已吊销: {request_id}, reason={reason}")
        return request

    # ── 策略 ──────────────────────────────────────────────

    def evaluate_auto_approval(self, request: CertificateRequest, identity: IdentityClaims) -> bool:
        """
        自动审批策略：
        - 用户认证 / 邮件签名：身份持有 REQUESTER 角色即可
        - 文档签名：身份属于文档签名组
        - 代码签名 / 服务器认证 / 未知类型：从不自动审批
        """
        certificate_type = CertificateType.parse(request.certificate_type)
        if certificate_type in (CertificateType.USER_AUTHENTICATION, CertificateType.EMAIL_SIGNING):
            return identity.has_role(Role.REQUESTER)
        if certificate_type == CertificateType.DOCUMENT_SIGNING:
            return any(group.lower() == self._document_signing_group for group in identity.groups)
        return False

    def is_authorized_for_type(self, identity: IdentityClaims, certificate_type: str) -> bool:
        parsed = CertificateType.parse(certificate_type)
        if parsed is None:
            return False
        if parsed in _OPEN_TYPES:
            return True
        allowed = self._privileged_type_roles.get(parsed, frozenset())
        return identity.has_role(*allowed)
