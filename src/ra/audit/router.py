"""
审计记录查询的 FastAPI 路由定义。
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.ra.auth.dependencies import require_claims
from src.ra.auth.schemas import Role, TokenClaims
from src.ra.deps import RAContext, get_context
from .schemas import AuditOutcome, AuditRecordListResponse

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("/records", response_model=AuditRecordListResponse)
def list_audit_records(
    username: Optional[str] = None,
    action: Optional[str] = None,
    outcome: Optional[AuditOutcome] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
) -> AuditRecordListResponse:
    """
    按条件查询审计记录（最新的在前），仅审计员与 RA 管理员可用。
    """
    if not claims.has_role(Role.AUDITOR, Role.RA_ADMIN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="仅审计员或 RA 管理员可以查看审计记录")
    matched = ctx.audit.records(username=username, action=action.upper() if action else None, outcome=outcome)
    return AuditRecordListResponse(records=matched[:limit], total_count=len(matched))
