"""
CSR 校验与公钥登记的数据模型定义。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from src.ra.schemas import CamelModel


class CertificateType(str, Enum):
    USER_AUTHENTICATION = "USER_AUTHENTICATION"
    EMAIL_SIGNING = "EMAIL_SIGNING"
    DOCUMENT_SIGNING = "DOCUMENT_SIGNING"
    CODE_SIGNING = "CODE_SIGNING"
    SERVER_AUTHENTICATION = "SERVER_AUTHENTICATION"

    @classmethod
    def parse(cls, value: str | None) -> Optional["CertificateType"]:
        """大小写不敏感地解析证书类型；未知类型返回 None。"""
        if not value:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class SubjectFields(BaseModel):
    """
    从 CSR 主题中提取的字段。
    """
    common_name: Optional[str] = None
    email: Optional[str] = None
    organizational_unit: Optional[str] = None
    organization: Optional[str] = None
    country: Optional[str] = None
    raw_dn: str = ""


class ValidationResult(BaseModel):
    """
    累积式校验结果：收集所有失败原因而不是在第一个失败处中止。
    """
    errors: List[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class BlacklistEntry(CamelModel):
    """
    公钥黑名单条目。
    """
    public_key_hash: str
    reason: str
    added_by: str
    added_at: datetime


class BlacklistAddRequest(CamelModel):
    public_key_hash: str
    reason: str


class BlacklistListResponse(CamelModel):
    entries: List[BlacklistEntry] = Field(default_factory=list)
