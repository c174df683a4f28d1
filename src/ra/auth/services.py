"""
认证服务的业务逻辑层：挑战-应答认证与令牌签发。

单次认证的状态流转：
    ChallengeRequested -> ChallengeIssued -> ResponseReceived -> {Verified, Rejected}
每个公开操作恰好写入一条审计记录（成功或失败）。
"""

from __future__ import annotations

import base64
from typing import Optional

from loguru import logger

from src.ra.audit.schemas import AuditAction, AuditOutcome, ClientInfo
from src.ra.audit.trail import AuditTrail
from src.ra.errors import AuthenticationError, AuthFailure, ValidationError
from .challenge_store import ChallengeStore
from .identity import IdentityProvider
from .schemas import ChallengeResponse, LogoutResponse, TokenClaims, TokenResponse
from .tokens import TokenService


class AuthService:
    def __init__(
        self,
        challenges: ChallengeStore,
        identity_provider: IdentityProvider,
        tokens: TokenService,
        audit: AuditTrail,
    ):
        self._challenges = challenges
        self._identity_provider = identity_provider
        self._tokens = tokens
        self._audit = audit

    def request_challenge(self, username: str, client: Optional[ClientInfo] = None) -> ChallengeResponse:
        """
        为用户生成挑战。
        :raises ValidationError: 用户名为空。
        """
        if not username or not username.strip():
            self._audit.record(
                username, AuditAction.CHALLENGE_REQUEST, "CHALLENGE", None,
                AuditOutcome.FAILURE, "用户名为空", client,
            )
            raise ValidationError("用户名不能为空")

        challenge = self._challenges.issue(username)
        self._audit.record(
            username, AuditAction.CHALLENGE_REQUEST, "CHALLENGE", challenge.challenge_id,
            AuditOutcome.SUCCESS, None, client,
        )
        logger.info(f"已为用户生成挑战: {username}")
        return ChallengeResponse(
            challenge_id=challenge.challenge_id,
            challenge=base64.b64encode(challenge.nonce).decode("utf-8"),
            salt=base64.b64encode(challenge.salt).decode("utf-8"),
            expires_at=int(challenge.expires_at.timestamp() * 1000),
        )

    def _reject(self, username: str, challenge_id: str, reason: AuthFailure, detail: str,
                client: Optional[ClientInfo]) -> AuthenticationError:
        self._audit.record(
            username, AuditAction.AUTHENTICATION, "CHALLENGE", challenge_id,
            AuditOutcome.FAILURE, detail, client,
        )
        logger.warning(f"认证失败: username={username}, reason={reason.value}, detail={detail}")
        if reason == AuthFailure.INVALID_CHALLENGE:
            return AuthenticationError(reason, "无效或过期的挑战")
        if reason == AuthFailure.IDENTITY_DISABLED:
            return AuthenticationError(reason, "身份不可用")
        return AuthenticationError(reason, "凭据无效")

    def authenticate(
        self,
        username: str,
        challenge_id: str,
        response: str,
        client: Optional[ClientInfo] = None,
    ) -> TokenResponse:
        """
        校验挑战应答并签发令牌。无论成功失败，挑战都只能使用一次。
        :raises AuthenticationError: 挑战无效、用户名不符、应答校验失败或身份不可用。
        """
        # 挑战在校验应答之前即被取出，同一挑战只有一个请求能拿到
        challenge = self._challenges.consume(challenge_id)
        if challenge is None:
            raise self._reject(username, challenge_id, AuthFailure.INVALID_CHALLENGE, "挑战不存在或已过期", client)

        if challenge.username != username:
            raise self._reject(username, challenge_id, AuthFailure.INVALID_CREDENTIALS, "用户名与挑战不匹配", client)

        try:
            verified = self._identity_provider.verify_response(username, response, challenge.nonce, challenge.salt)
        except Exception as e:
            logger.error(f"身份提供方校验应答时出错: {e}")
            verified = False
        if not verified:
            raise self._reject(username, challenge_id, AuthFailure.INVALID_CREDENTIALS, "应答校验失败", client)

        identity = self._identity_provider.get_identity(username)
        if identity is None:
            raise self._reject(username, challenge_id, AuthFailure.IDENTITY_DISABLED, "无法获取身份信息", client)

        token = self._tokens.issue(identity)
        self._audit.record(
            username, AuditAction.AUTHENTICATION, "CHALLENGE", challenge_id,
            AuditOutcome.SUCCESS, f"roles={','.join(r.value for r in identity.roles)}", client,
        )
        logger.info(f"用户认证成功: {username}")
        return TokenResponse(
            token=token,
            expires_in=self._tokens.expires_in_seconds,
            username=username,
            roles=identity.roles,
        )

    def verify_token(self, token: str) -> Optional[TokenClaims]:
        return self._tokens.verify(token)

    def logout(self, token: str, client: Optional[ClientInfo] = None) -> LogoutResponse:
        """
        仅作确认：令牌是自包含的，服务端没有吊销机制，令牌在过期前仍然有效。
        """
        claims = self._tokens.verify(token)
        username = claims.username if claims else None
        self._audit.record(
            username, AuditAction.LOGOUT, "TOKEN", None,
            AuditOutcome.SUCCESS if claims else AuditOutcome.FAILURE,
            "令牌在过期前仍然有效", client,
        )
        return LogoutResponse(success=True, message="已登出")
