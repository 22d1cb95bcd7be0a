"""
Numeric error codes shared by the domain, application and gateway adapters.

Generic codes live here; checkout and gateway codes live in
``shared.codes.payment_codes`` and are re-exported for convenience.
"""
from enum import IntEnum

from shared.codes.payment_codes import PaymentCode


class BusinessCode(IntEnum):
    """通用业务码（支付码见 PaymentCode）"""

    SUCCESS = 0

    # Invalid input (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Business rule violations (2xxxx)
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006

    # Infrastructure (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode", "PaymentCode"]
