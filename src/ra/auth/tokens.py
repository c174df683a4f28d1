"""
无状态 Bearer 令牌（HS256 JWT）的签发与校验。

令牌自包含：服务端没有吊销列表，令牌在自然过期前始终有效，登出只是确认。
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from loguru import logger

from .schemas import IdentityClaims, Role, TokenClaims

ALGORITHM = "HS256"


class TokenService:
    def __init__(
        self,
        secret: str,
        expiration: timedelta = timedelta(hours=24),
        issuer: str = "RA-Service",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not secret:
            raise ValueError("JWT 密钥不能为空")
        self._secret = secret
        self._expiration = expiration
        self._issuer = issuer
        self._clock = clock
        logger.info(f"令牌服务已初始化，有效期: {int(expiration.total_seconds())} 秒")

    @property
    def expires_in_seconds(self) -> int:
        return int(self._expiration.total_seconds())

    def issue(self, identity: IdentityClaims) -> str:
        """
        为已认证的身份签发令牌。
        :param identity: 身份声明。
        :return: 编码后的 JWT。
        """
        now = self._clock()
        payload = {
            "sub": identity.username,
            "username": identity.username,
            "displayName": identity.display_name,
            "email": identity.email,
            "roles": [role.value for role in identity.roles],
            "iat": int(now.timestamp()),
            "exp": int((now + self._expiration).timestamp()),
            "iss": self._issuer,
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        logger.debug(f"已为用户签发令牌: {identity.username}")
        return token

    def verify(self, token: str) -> Optional[TokenClaims]:
        """
        校验签名、过期时间与签发者。
        :return: 令牌声明；无效时返回 None。
        """
        if not token or not token.strip():
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                issuer=self._issuer,
                options={"require": ["sub", "exp", "iat", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("令牌已过期")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"令牌无效: {e}")
            return None

        roles = []
        for value in payload.get("roles") or []:
            try:
                roles.append(Role(value))
            except ValueError:
                logger.warning(f"令牌中包含未知角色，已忽略: {value}")
        return TokenClaims(
            username=payload["sub"],
            display_name=payload.get("displayName"),
            email=payload.get("email"),
            roles=roles,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
