"""
路由层共用的 FastAPI 依赖：提取调用方网络信息、校验 Bearer 令牌。
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from src.ra.audit.schemas import ClientInfo
from src.ra.deps import RAContext, get_context
from .schemas import TokenClaims

bearer_scheme = HTTPBearer(auto_error=False)


def client_info(request: Request) -> ClientInfo:
    """
    优先取 X-Forwarded-For 的第一跳作为客户端地址。
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return ClientInfo(ip_address=ip_address, user_agent=request.headers.get("User-Agent"))


def require_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ctx: RAContext = Depends(get_context),
) -> TokenClaims:
    """
    校验 Authorization: Bearer 令牌，失败时返回 401。
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="缺少访问令牌",
            headers={"WWW-Authenticate": "Bearer"},
        )
    claims = ctx.tokens.verify(credentials.credentials)
    if claims is None:
        logger.warning("访问令牌无效或已过期")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="访问令牌无效或已过期",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims
