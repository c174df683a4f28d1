"""
公钥黑名单管理的 FastAPI 路由定义。
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status

from src.ra.audit.schemas import ClientInfo
from src.ra.auth.dependencies import client_info, require_claims
from src.ra.auth.schemas import TokenClaims
from src.ra.deps import RAContext, get_context
from src.ra.errors import RAError, to_http_exception
from .schemas import BlacklistAddRequest, BlacklistEntry, BlacklistListResponse

router = APIRouter(prefix="/keys", tags=["Public Key Blacklist"])


@router.get("/blacklist", response_model=BlacklistListResponse)
def list_blacklist(
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
) -> BlacklistListResponse:
    try:
        return ctx.blacklist.list_entries(claims)
    except RAError as e:
        raise to_http_exception(e)


@router.post("/blacklist", response_model=BlacklistEntry, status_code=status.HTTP_201_CREATED)
def add_to_blacklist(
    req: BlacklistAddRequest,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> BlacklistEntry:
    """
    将公钥指纹（SHA-256，十六进制）加入黑名单，之后使用该公钥的 CSR 都会被拒绝。
    """
    try:
        return ctx.blacklist.add(claims, req, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.delete("/blacklist/{fingerprint}", status_code=status.HTTP_204_NO_CONTENT)
def remove_from_blacklist(
    fingerprint: str,
    claims: TokenClaims = Depends(require_claims),
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> Response:
    try:
        ctx.blacklist.remove(claims, fingerprint, client)
    except RAError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
