"""
证书申请的业务编排层。

提交流程（顺序固定）：
    解析 CSR -> 持有证明 -> 提取主题 -> 重新获取身份 -> 主题比对 -> 密钥强度
    -> 公钥重复使用 -> 证书类型授权 -> 创建请求 -> 自动审批 -> 提交 CA -> 标记签发
CA 调用失败时请求停留在 APPROVED 状态，可由 RA 官员通过 forward_to_ca 手动重新提交。
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from src.ra.audit.schemas import AuditAction, AuditOutcome, ClientInfo
from src.ra.audit.trail import AuditTrail
from src.ra.auth.identity import IdentityProvider
from src.ra.auth.schemas import Role, TokenClaims
from src.ra.csr.core import CSRValidator
from src.ra.errors import (
    AuthenticationError,
    AuthFailure,
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    RAError,
    ValidationError,
)
from .ca_connector import CAConnector
from .ledger import RESOURCE_TYPE, CertificateRequestLedger
from .schemas import (
    CertificateDownloadResponse,
    CertificateRequest,
    CertificateRequestListResponse,
    CertificateRequestResponse,
    CertificateRequestStatusResponse,
    RequestStatus,
    RevocationResponse,
)

AUTO_APPROVER = "SYSTEM_AUTO_APPROVAL"

VIEW_ROLES = (Role.RA_OPERATOR, Role.RA_OFFICER, Role.RA_ADMIN, Role.AUDITOR)
DOWNLOAD_ROLES = (Role.RA_OPERATOR, Role.RA_OFFICER, Role.RA_ADMIN)
REVIEW_ROLES = (Role.RA_OFFICER, Role.RA_ADMIN)
LIST_ROLES = VIEW_ROLES

MAX_PAGE_SIZE = 200


class EnrollmentService:
    def __init__(
        self,
        validator: CSRValidator,
        ledger: CertificateRequestLedger,
        identity_provider: IdentityProvider,
        ca: CAConnector,
        audit: AuditTrail,
    ):
        self._validator = validator
        self._ledger = ledger
        self._identity_provider = identity_provider
        self._ca = ca
        self._audit = audit

    def _fail(self, username: Optional[str], action: AuditAction, resource_id: Optional[str],
              error: RAError, client: Optional[ClientInfo]) -> RAError:
        self._audit.record(username, action, RESOURCE_TYPE, resource_id, AuditOutcome.FAILURE, str(error), client)
        logger.warning(f"{action.value} 失败: username={username}, resource={resource_id}, error={error}")
        return error

    # ── 提交 ──────────────────────────────────────────────

    def submit_csr(
        self,
        claims: TokenClaims,
        csr_pem: str,
        certificate_type: str,
        comments: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> CertificateRequestResponse:
        """
        校验并登记一个 CSR，满足自动审批条件时直接提交 CA 签发。
        :raises FormatError / ValidationError: CSR 无法解析或未通过校验。
        :raises AuthenticationError: 身份已不可用。
        :raises ConflictError: 公钥已被使用或在黑名单中。
        :raises AuthorizationError: 无权申请该证书类型。
        """
        username = claims.username
        action = AuditAction.CSR_SUBMISSION
        logger.info(f"收到证书申请: user={username}, type={certificate_type}")

        if not csr_pem or not csr_pem.strip():
            raise self._fail(username, action, None, ValidationError("CSR 内容不能为空"), client)
        if not certificate_type or not certificate_type.strip():
            raise self._fail(username, action, None, ValidationError("证书类型不能为空"), client)

        try:
            csr = self._validator.parse(csr_pem)
        except RAError as e:
            raise self._fail(username, action, None, e, client)

        if not self._validator.verify_proof_of_possession(csr):
            raise self._fail(username, action, None, ValidationError("CSR 签名验证失败，无法证明持有私钥"), client)

        subject = self._validator.extract_subject(csr)

        identity = self._identity_provider.get_identity(username)
        if identity is None:
            raise self._fail(
                username, action, None,
                AuthenticationError(AuthFailure.IDENTITY_DISABLED, "身份不可用"), client,
            )

        subject_result = self._validator.validate_subject_against_identity(subject, identity)
        if not subject_result.valid:
            raise self._fail(username, action, None, ValidationError("主题校验失败", subject_result.errors), client)

        key_result = self._validator.validate_key_strength(csr, certificate_type)
        if not key_result.valid:
            raise self._fail(username, action, None, ValidationError("密钥强度校验失败", key_result.errors), client)

        if self._validator.is_key_reused(csr):
            raise self._fail(username, action, None, ConflictError("该公钥已被使用或已列入黑名单"), client)

        if not self._ledger.is_authorized_for_type(identity, certificate_type):
            raise self._fail(
                username, action, None,
                AuthorizationError(f"无权申请该类型的证书: {certificate_type}"), client,
            )

        request = self._ledger.submit(
            username, self._validator.to_pem(csr), certificate_type, subject, identity, comments, client,
        )

        auto_approved = self._ledger.evaluate_auto_approval(request, identity)
        if auto_approved:
            request = self._ledger.approve(request.request_id, AUTO_APPROVER, client=client)
            logger.info(f"证书请求已自动批准: {request.request_id}")
            try:
                request = self._forward(request, AUTO_APPROVER, client)
            except ExternalServiceError:
                # 请求保持 APPROVED，等待 forward_to_ca 手动重新提交
                request = self._ledger.get(request.request_id)
        else:
            logger.info(f"证书请求等待人工审批: {request.request_id}")

        return CertificateRequestResponse(
            request_id=request.request_id,
            status=request.status,
            subject_dn=request.subject_dn,
            submitted_at=request.submitted_at,
            auto_approved=auto_approved,
        )

    def _forward(self, request: CertificateRequest, actor: str,
                 client: Optional[ClientInfo]) -> CertificateRequest:
        """将已批准的请求提交给 CA，成功后标记为 ISSUED。"""
        try:
            issued = self._ca.submit(
                request.request_id, request.csr_pem, request.subject_dn,
                request.certificate_type, request.username,
            )
        except Exception as e:
            error = e if isinstance(e, ExternalServiceError) else ExternalServiceError(str(e))
            self._audit.record(
                actor, AuditAction.CA_SUBMISSION, RESOURCE_TYPE, request.request_id,
                AuditOutcome.FAILURE, str(error), client,
            )
            logger.error(f"提交 CA 失败，请求保持 APPROVED: {request.request_id}, error={error}")
            raise error

        self._audit.record(
            actor, AuditAction.CA_SUBMISSION, RESOURCE_TYPE, request.request_id,
            AuditOutcome.SUCCESS, f"证书序列号: {issued.serial_number}", client,
        )
        return self._ledger.mark_issued(
            request.request_id, issued.serial_number, issued.certificate_pem, actor, client,
        )

    # ── 查询 ──────────────────────────────────────────────

    def get_request(self, claims: TokenClaims, request_id: str,
                    client: Optional[ClientInfo] = None) -> CertificateRequestStatusResponse:
        """
        申请人本人或 RA 工作人员（含审计员）可以查看。
        """
        request = self._ledger.get(request_id)
        if request.username != claims.username and not claims.has_role(*VIEW_ROLES):
            raise self._fail(
                claims.username, AuditAction.REQUEST_QUERY, request_id,
                AuthorizationError("无权查看该证书请求"), client,
            )
        return CertificateRequestStatusResponse.from_request(request)

    def download_certificate(self, claims: TokenClaims, request_id: str,
                             client: Optional[ClientInfo] = None) -> CertificateDownloadResponse:
        action = AuditAction.CERTIFICATE_DOWNLOAD
        request = self._ledger.get(request_id)
        if request.username != claims.username and not claims.has_role(*DOWNLOAD_ROLES):
            raise self._fail(claims.username, action, request_id, AuthorizationError("无权下载该证书"), client)
        if request.status != RequestStatus.ISSUED:
            raise self._fail(
                claims.username, action, request_id,
                ConflictError(f"证书尚未签发，当前状态: {request.status.value}"), client,
            )

        certificate_pem = request.certificate_pem
        if not certificate_pem:
            try:
                certificate_pem = self._ca.retrieve(request_id)
            except Exception as e:
                error = e if isinstance(e, RAError) else ExternalServiceError(str(e))
                raise self._fail(claims.username, action, request_id, error, client)

        self._audit.record(claims.username, action, RESOURCE_TYPE, request_id, AuditOutcome.SUCCESS, None, client)
        logger.info(f"证书已下载: {request_id}, by={claims.username}")
        return CertificateDownloadResponse(
            request_id=request_id,
            serial_number=request.certificate_serial_number,
            certificate_pem=certificate_pem,
        )

    def list_requests(
        self,
        claims: TokenClaims,
        status: Optional[str] = None,
        page: int = 0,
        size: int = 50,
        client: Optional[ClientInfo] = None,
    ) -> CertificateRequestListResponse:
        action = AuditAction.REQUEST_QUERY
        if not claims.has_role(*LIST_ROLES):
            raise self._fail(claims.username, action, None, AuthorizationError("仅 RA 工作人员可以查看请求列表"), client)
        if page < 0 or size < 1 or size > MAX_PAGE_SIZE:
            raise self._fail(
                claims.username, action, None,
                ValidationError(f"分页参数无效: page={page}, size={size}"), client,
            )

        status_filter: Optional[RequestStatus] = None
        if status:
            try:
                status_filter = RequestStatus(status.strip().upper())
            except ValueError:
                raise self._fail(claims.username, action, None, ValidationError(f"未知的请求状态: {status}"), client)

        requests, total = self._ledger.list_requests(status_filter, page, size)
        return CertificateRequestListResponse(
            requests=[CertificateRequestStatusResponse.from_request(r) for r in requests],
            total_count=total,
            page=page,
            size=size,
        )

    # ── 审批与签发 ────────────────────────────────────────

    def _require_reviewer(self, claims: TokenClaims, action: AuditAction, request_id: str,
                          client: Optional[ClientInfo]) -> None:
        if not claims.has_role(*REVIEW_ROLES):
            raise self._fail(
                claims.username, action, request_id,
                AuthorizationError("仅 RA 官员或管理员可以执行该操作"), client,
            )

    def approve(self, claims: TokenClaims, request_id: str, comments: Optional[str] = None,
                client: Optional[ClientInfo] = None) -> CertificateRequestStatusResponse:
        """
        人工批准并立即提交 CA。CA 失败时返回 APPROVED 状态。
        """
        self._require_reviewer(claims, AuditAction.REQUEST_APPROVAL, request_id, client)
        request = self._ledger.approve(request_id, claims.username, comments, client)
        try:
            request = self._forward(request, claims.username, client)
        except ExternalServiceError:
            request = self._ledger.get(request_id)
        return CertificateRequestStatusResponse.from_request(request)

    def reject(self, claims: TokenClaims, request_id: str, reason: str,
               client: Optional[ClientInfo] = None) -> CertificateRequestStatusResponse:
        action = AuditAction.REQUEST_REJECTION
        self._require_reviewer(claims, action, request_id, client)
        if not reason or not reason.strip():
            raise self._fail(claims.username, action, request_id, ValidationError("拒绝原因不能为空"), client)
        request = self._ledger.reject(request_id, claims.username, reason.strip(), client)
        return CertificateRequestStatusResponse.from_request(request)

    def forward_to_ca(self, claims: TokenClaims, request_id: str,
                      client: Optional[ClientInfo] = None) -> CertificateRequestStatusResponse:
        """
        重新提交因 CA 故障而停留在 APPROVED 的请求。
        :raises ConflictError: 请求不处于 APPROVED 状态。
        :raises ExternalServiceError: CA 再次失败。
        """
        action = AuditAction.CA_SUBMISSION
        self._require_reviewer(claims, action, request_id, client)
        request = self._ledger.get(request_id)
        if request.status != RequestStatus.APPROVED:
            raise self._fail(
                claims.username, action, request_id,
                ConflictError(f"只有 APPROVED 状态的请求可以提交 CA，当前状态: {request.status.value}"), client,
            )
        request = self._forward(request, claims.username, client)
        return CertificateRequestStatusResponse.from_request(request)

    # ── 吊销 ──────────────────────────────────────────────

    def _find_by_certificate_id(self, certificate_id: str) -> CertificateRequest:
        """certificate_id 可以是证书序列号，也可以是请求 ID。"""
        try:
            return self._ledger.get_by_serial(certificate_id)
        except NotFoundError:
            return self._ledger.get(certificate_id)

    def revoke(self, claims: TokenClaims, certificate_id: str, reason: str,
               client: Optional[ClientInfo] = None) -> RevocationResponse:
        """
        先在 CA 吊销，成功后再更新本地状态；同一证书同时只有一个吊销会发往 CA。
        :raises NotFoundError: 证书不存在。
        :raises ConflictError: 证书不处于 ISSUED 状态，或正在吊销中。
        :raises ExternalServiceError: CA 吊销失败。
        """
        action = AuditAction.CERTIFICATE_REVOCATION
        self._require_reviewer(claims, action, certificate_id, client)
        if not reason or not reason.strip():
            raise self._fail(claims.username, action, certificate_id, ValidationError("吊销原因不能为空"), client)

        try:
            found = self._find_by_certificate_id(certificate_id)
            request = self._ledger.begin_revocation(found.request_id)
        except (NotFoundError, ConflictError) as e:
            raise self._fail(claims.username, action, certificate_id, e, client)

        try:
            try:
                revoked = self._ca.revoke(request.certificate_serial_number, reason, claims.username)
            except Exception as e:
                error = e if isinstance(e, ExternalServiceError) else ExternalServiceError(str(e))
                logger.error(f"CA 吊销证书失败: {certificate_id}, error={error}")
                raise self._fail(claims.username, action, request.request_id, error, client)
            if not revoked:
                raise self._fail(claims.username, action, request.request_id,
                                 ExternalServiceError("CA 拒绝吊销该证书"), client)
            request = self._ledger.mark_revoked(request.request_id, reason, claims.username, client)
        finally:
            self._ledger.end_revocation(request.request_id)
        return RevocationResponse(
            success=True,
            message="证书已吊销",
            revoked_at=request.revoked_at or datetime.now(timezone.utc),
        )
