"""
认证服务的 FastAPI 路由定义。
"""

from fastapi import APIRouter, Depends, HTTPException

from src.ra.audit.schemas import ClientInfo
from src.ra.deps import RAContext, get_context
from src.ra.errors import RAError, to_http_exception
from .dependencies import client_info
from .schemas import (
    ChallengeRequest,
    ChallengeResponse,
    LoginRequest,
    LogoutResponse,
    TokenRequest,
    TokenResponse,
    TokenVerificationResponse,
)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/challenge", response_model=ChallengeResponse)
def request_challenge(
    req: ChallengeRequest,
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> ChallengeResponse:
    """
    为用户生成一次性挑战，客户端用口令派生的密钥加密后提交登录。
    """
    try:
        return ctx.auth.request_challenge(req.username, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/login", response_model=TokenResponse)
def login(
    req: LoginRequest,
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> TokenResponse:
    """
    提交挑战应答，验证通过后返回 Bearer 令牌。
    """
    try:
        return ctx.auth.authenticate(req.username, req.challenge_id, req.encrypted_response, client)
    except RAError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")


@router.post("/verify", response_model=TokenVerificationResponse)
def verify_token(req: TokenRequest, ctx: RAContext = Depends(get_context)) -> TokenVerificationResponse:
    claims = ctx.auth.verify_token(req.token)
    if claims is None:
        return TokenVerificationResponse(valid=False)
    return TokenVerificationResponse(valid=True, username=claims.username)


@router.post("/logout", response_model=LogoutResponse)
def logout(
    req: TokenRequest,
    ctx: RAContext = Depends(get_context),
    client: ClientInfo = Depends(client_info),
) -> LogoutResponse:
    """
    仅作确认，令牌在过期前仍然有效。
    """
    return ctx.auth.logout(req.token, client)
