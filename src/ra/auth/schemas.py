"""
认证服务的数据模型定义。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field

from src.ra.schemas import CamelModel


class Role(str, Enum):
    REQUESTER = "REQUESTER"
    RA_OPERATOR = "RA_OPERATOR"
    RA_OFFICER = "RA_OFFICER"
    RA_ADMIN = "RA_ADMIN"
    AUDITOR = "AUDITOR"


@dataclass(frozen=True)
class Challenge:
    """
    一次性认证挑战，仅保存在进程内存中。
    """
    challenge_id: str
    nonce: bytes
    salt: bytes
    username: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class IdentityClaims(BaseModel):
    """
    身份提供方返回的身份属性，每次调用重新获取，不做缓存。
    """
    username: str
    display_name: str
    email: Optional[str] = None
    organizational_unit: Optional[str] = None
    organization: Optional[str] = None
    country: Optional[str] = None
    groups: Set[str] = Field(default_factory=set)
    roles: List[Role] = Field(default_factory=list)

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)


class TokenClaims(BaseModel):
    """
    从已验证的令牌中取出的声明。
    """
    username: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    roles: List[Role] = Field(default_factory=list)
    issued_at: datetime
    expires_at: datetime

    def has_role(self, *roles: Role) -> bool:
        return any(role in self.roles for role in roles)


class ChallengeRequest(CamelModel):
    """
    客户端请求挑战时的数据模型。
    """
    username: str


class ChallengeResponse(CamelModel):
    """
    服务端返回挑战的数据模型。
    """
    challenge_id: str
    challenge: str  # Base64 编码的随机数
    salt: str       # Base64 编码的盐
    expires_at: int  # 毫秒时间戳


class LoginRequest(CamelModel):
    """
    客户端提交挑战应答时的数据模型。
    """
    username: str
    challenge_id: str
    encrypted_response: str  # Base64(iv || AES-GCM 密文)


class TokenResponse(CamelModel):
    token: str
    token_type: str = "Bearer"
    expires_in: int
    username: str
    roles: List[Role] = Field(default_factory=list)


class TokenRequest(CamelModel):
    token: str


class TokenVerificationResponse(CamelModel):
    valid: bool
    username: Optional[str] = None


class LogoutResponse(CamelModel):
    success: bool
    message: str
