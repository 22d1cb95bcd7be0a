"""业务异常基类。

各层（领域、应用、基础设施）抛出的错误都继承 BusinessException，
携带稳定的数字码与错误类型；支付结账相关的具体异常见 domain.payment.exceptions。
"""
from __future__ import annotations

from typing import Any, Optional

from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """结构化表示，用于日志字段"""
        data: dict[str, Any] = {
            "code": int(self.code),
            "error_type": self.error_type,
            "error": self.message,
        }
        if self.field:
            data["field"] = self.field
        if self.details:
            data["details"] = self.details
        return data


class DomainValidationException(BusinessException):
    """实体不变量或网关返回的字段校验失败"""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )
