"""
证书申请服务的 FastAPI 路由定义。
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.ra.audit.schemas import ClientInfo
from src.ra.auth.dependencies import client_info, require_claims
from src.ra.auth.schemas import TokenClaims
from src.ra.deps import RAContext, get_context
from src.ra.errors import RAError, to_http_exception
from .schemas import (
    ApprovalRequest,
    CertificateDownloadResponse,
    CertificateRequestListResponse,
    CertificateRequestResponse,
    CertificateRequestStatusResponse,
    CSRSubmissionRequest,
    RejectionRequest,
    RevocationRequest,
    RevocationResponse,
)

router = APIRouter(prefix="/certificates", tags=["Certificate Requests"])


@router.post("/requests", response_model=CertificateRequestResponse, status_code=status.HTTP_201_CREATED)
def submit_csr(
    req: CSRSubmissionRequest,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestResponse:
    """
    提交 PKCS#10 CSR。满足自动审批条件时直接签发。
    """
    try:
        return ctx.enrollment.submit_csr(claims, req.csr_pem, req.certificate_type, req.comments, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.get("/requests", response_model=CertificateRequestListResponse)
def list_requests(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=0, ge=0),
    size: int = Query(default=50, ge=1, le=200),
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestListResponse:
    try:
        return ctx.enrollment.list_requests(claims, status_filter, page, size, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.get("/requests/{request_id}", response_model=CertificateRequestStatusResponse)
def get_request(
    request_id: str,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestStatusResponse:
    try:
        return ctx.enrollment.get_request(claims, request_id, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.get("/requests/{request_id}/certificate", response_model=CertificateDownloadResponse)
def download_certificate(
    request_id: str,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateDownloadResponse:
    try:
        return ctx.enrollment.download_certificate(claims, request_id, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/requests/{request_id}/approve", response_model=CertificateRequestStatusResponse)
def approve_request(
    request_id: str,
    req: Optional[ApprovalRequest] = None,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestStatusResponse:
    """
    人工批准待审批的请求，并立即提交 CA。
    """
    try:
        return ctx.enrollment.approve(claims, request_id, req.comments if req else None, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/requests/{request_id}/reject", response_model=CertificateRequestStatusResponse)
def reject_request(
    request_id: str,
    req: RejectionRequest,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestStatusResponse:
    try:
        return ctx.enrollment.reject(claims, request_id, req.reason, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/requests/{request_id}/submit-to-ca", response_model=CertificateRequestStatusResponse)
def submit_to_ca(
    request_id: str,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> CertificateRequestStatusResponse:
    """
    重新提交因 CA 故障停留在 APPROVED 状态的请求。
    """
    try:
        return ctx.enrollment.forward_to_ca(claims, request_id, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/{certificate_id}/revoke", response_model=RevocationResponse)
def revoke_certificate(
    certificate_id: str,
    req: RevocationRequest,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> RevocationResponse:
    """
    吊销证书。certificate_id 可以是证书序列号或请求 ID。
    """
    try:
        return ctx.enrollment.revoke(claims, certificate_id, req.reason, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")
