"""
证书请求的数据模型定义。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from src.ra.schemas import CamelModel


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ISSUED = "ISSUED"
    REVOKED = "REVOKED"


class CertificateRequest(CamelModel):
    """
    证书请求记录。只通过状态机定义的迁移修改，从不删除。
    """
    request_id: str
    username: str
    csr_pem: str
    certificate_type: str
    subject_dn: str = Field(alias="subjectDN")
    status: RequestStatus = RequestStatus.PENDING
    submitted_at: datetime
    comments: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    issued_at: Optional[datetime] = None
    certificate_serial_number: Optional[str] = None
    certificate_pem: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    public_key_hash: Optional[str] = None


class IssuedCertificate(CamelModel):
    """
    上游 CA 签发结果。
    """
    serial_number: str
    certificate_pem: str


class CSRSubmissionRequest(CamelModel):
    csr_pem: str
    certificate_type: str
    comments: Optional[str] = None


class CertificateRequestResponse(CamelModel):
    request_id: str
    status: RequestStatus
    subject_dn: str = Field(alias="subjectDN")
    submitted_at: datetime
    auto_approved: bool


class CertificateRequestStatusResponse(CamelModel):
    request_id: str
    status: RequestStatus
    subject_dn: str = Field(alias="subjectDN")
    username: str
    certificate_type: str
    submitted_at: datetime
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    issued_at: Optional[datetime] = None
    certificate_serial_number: Optional[str] = None
    rejection_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    @classmethod
    def from_request(cls, request: CertificateRequest) -> "CertificateRequestStatusResponse":
        return cls(
            request_id=request.request_id,
            status=request.status,
            subject_dn=request.subject_dn,
            username=request.username,
            certificate_type=request.certificate_type,
            submitted_at=request.submitted_at,
            approved_at=request.approved_at,
            approved_by=request.approved_by,
            issued_at=request.issued_at,
            certificate_serial_number=request.certificate_serial_number,
            rejection_reason=request.rejection_reason,
            revoked_at=request.revoked_at,
            revocation_reason=request.revocation_reason,
        )


class CertificateDownloadResponse(CamelModel):
    request_id: str
    serial_number: Optional[str] = None
    certificate_pem: str


class CertificateRequestListResponse(CamelModel):
    requests: List[CertificateRequestStatusResponse] = Field(default_factory=list)
    total_count: int
    page: int
    size: int


class ApprovalRequest(CamelModel):
    comments: Optional[str] = None


class RejectionRequest(CamelModel):
    reason: str


class RevocationRequest(CamelModel):
    reason: str


class RevocationResponse(CamelModel):
    success: bool
    message: str
    revoked_at: Optional[datetime] = None
