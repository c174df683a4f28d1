"""
审计日志的数据模型定义。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from src.ra.schemas import CamelModel


class AuditOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class AuditAction(str, Enum):
    CHALLENGE_REQUEST = "CHALLENGE_REQUEST"
    AUTHENTICATION = "AUTHENTICATION"
    LOGOUT = "LOGOUT"
    CSR_SUBMISSION = "CSR_SUBMISSION"
    REQUEST_QUERY = "REQUEST_QUERY"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    REQUEST_REJECTION = "REQUEST_REJECTION"
    CA_SUBMISSION = "CA_SUBMISSION"
    CERTIFICATE_ISSUANCE = "CERTIFICATE_ISSUANCE"
    CERTIFICATE_DOWNLOAD = "CERTIFICATE_DOWNLOAD"
    CERTIFICATE_REVOCATION = "CERTIFICATE_REVOCATION"
    KEY_BLACKLIST_ADD = "KEY_BLACKLIST_ADD"
    KEY_BLACKLIST_REMOVE = "KEY_BLACKLIST_REMOVE"


class ClientInfo(BaseModel):
    """
    调用方的网络信息，由路由层从请求中提取。
    """
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecord(CamelModel):
    """
    一条只追加的审计记录。
    """
    record_id: str
    timestamp: datetime
    username: Optional[str] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    outcome: AuditOutcome
    detail: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecordListResponse(CamelModel):
    records: List[AuditRecord] = Field(default_factory=list)
    total_count: int
