"""
RA 的错误分类。

服务层只抛出这里定义的异常；路由层通过 to_http_exception 将其映射为 HTTP 状态码。
FormatError / ValidationError 继承 ValueError，ExternalServiceError 继承 RuntimeError，
与既有 "ValueError -> 400, RuntimeError -> 500" 的约定保持一致。
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, List

from fastapi import HTTPException, status


class RAError(Exception):
    """所有 RA 业务异常的基类。"""


class FormatError(RAError, ValueError):
    """无法解析的 CSR / PEM 等输入。"""


class ValidationError(RAError, ValueError):
    """策略校验失败，携带全部失败原因。"""

    def __init__(self, message: str, errors: Iterable[str] = ()):
        self.errors: List[str] = list(errors)
        if self.errors:
            message = f"{message}: {', '.join(self.errors)}"
        super().__init__(message)


class AuthFailure(str, Enum):
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    IDENTITY_DISABLED = "IDENTITY_DISABLED"
    INVALID_TOKEN = "INVALID_TOKEN"


class AuthenticationError(RAError):
    """挑战无效/过期、凭据不符或身份被禁用。"""

    def __init__(self, reason: AuthFailure, message: str | None = None):
        self.reason = reason
        super().__init__(message or reason.value)


class AuthorizationError(RAError):
    """非资源属主、缺少角色或无权申请该证书类型。"""


class ConflictError(RAError):
    """公钥重复使用、证书尚未签发等与当前状态冲突的请求。"""


class InvalidStateTransition(ConflictError):
    """证书请求状态机中不允许的迁移。"""

    def __init__(self, request_id: str, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"证书请求 {request_id} 当前状态为 {current}，无法迁移到 {target}")


class NotFoundError(RAError):
    """未知的请求 ID 或证书 ID。"""


class ExternalServiceError(RAError, RuntimeError):
    """上游 CA 不可达或返回了无法识别的响应。"""


_STATUS_BY_ERROR = (
    (FormatError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def to_http_exception(exc: RAError) -> HTTPException:
    """将业务异常映射为 HTTPException。"""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            if isinstance(exc, ExternalServiceError):
                return HTTPException(status_code=status_code, detail=f"CA 服务调用失败: {str(exc)}")
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"内部服务器错误: {str(exc)}")
