"""
支付领域实体 - 支付请求、支付意图、支付记录与支付方式
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from domain.common.exceptions import DomainValidationException


class CurrencyCode(str, Enum):
    """支持的货币代码"""
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    CAD = "CAD"
    AUD = "AUD"
    JPY = "JPY"
    CHF = "CHF"
    INR = "INR"


class PaymentMethodType(str, Enum):
    """支付方式类型"""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    DIGITAL_WALLET = "digital_wallet"
    CASH = "cash"
    CHECK = "check"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                          # 待支付
    PROCESSING = "processing"                    # 处理中
    COMPLETED = "completed"                      # 支付成功
    FAILED = "failed"                            # 支付失败
    CANCELLED = "cancelled"                      # 已取消
    REFUNDED = "refunded"                        # 已退款
    PARTIALLY_REFUNDED = "partially_refunded"    # 部分退款


TERMINAL_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED,
})


class IntentStatus(str, Enum):
    """支付意图状态（网关侧）"""
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    PRODUCT_NOT_RECEIVED = "product_not_received"
    PRODUCT_UNACCEPTABLE = "product_unacceptable"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    OTHER = "other"


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_currency(value: str | CurrencyCode) -> CurrencyCode:
    """业务规则：货币代码必须在支持列表内"""
    if isinstance(value, CurrencyCode):
        return value
    try:
        return CurrencyCode((value or "").upper())
    except ValueError:
        raise DomainValidationException(
            f"Unsupported currency: {value}",
            field="currency",
        ) from None


@dataclass(frozen=True)
class Address:
    """账单地址"""
    line1: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""  # ISO 3166-1 alpha-2
    line2: Optional[str] = None

    def with_field(self, name: str, value: str) -> "Address":
        if name not in {"line1", "line2", "city", "state", "postal_code", "country"}:
            raise DomainValidationException(f"Unknown address field: {name}", field=name)
        return replace(self, **{name: value})


@dataclass(frozen=True)
class PaymentMethod:
    """已保存的支付方式（凭证已由网关令牌化，本地只持有引用）"""
    id: str
    type: PaymentMethodType
    is_default: bool = False
    last4: Optional[str] = None
    brand: Optional[str] = None
    billing_address: Optional[Address] = None
    customer_id: Optional[str] = None
    gateway_payment_method_id: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    cardholder_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        label = self.brand or self.type.value.replace("_", " ").title()
        return f"{label} •••• {self.last4}" if self.last4 else label


@dataclass
class PaymentRequest:
    """
    一次收款请求

    业务规则：
    1. 金额（最小货币单位）必须大于0
    2. 货币代码必须在支持列表内
    """

    amount: int
    currency: CurrencyCode
    payment_method_id: Optional[str] = None
    booking_id: Optional[str] = None
    description: Optional[str] = None
    billing_address: Optional[Address] = None
    metadata: dict = field(default_factory=dict)
    save_payment_method: bool = False

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise DomainValidationException(
                f"Amount must be an integer in minor units: {self.amount!r}",
                field="amount",
            )
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be greater than 0: {self.amount}",
                field="amount",
            )
        self.currency = parse_currency(self.currency)
        if self.metadata is None:
            self.metadata = {}


@dataclass(frozen=True)
class PaymentIntent:
    """网关侧支付意图，每次提交尝试创建一次，过期后不可复用"""
    id: str
    client_secret: str
    amount: int
    currency: CurrencyCode
    status: IntentStatus
    allowed_method_types: tuple[PaymentMethodType, ...] = ()
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "created_at", _ensure_utc(self.created_at))
        object.__setattr__(self, "expires_at", _ensure_utc(self.expires_at))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = _ensure_utc(now) or datetime.now(timezone.utc)
        return now >= self.expires_at


@dataclass(frozen=True)
class PaymentRefund:
    id: str
    amount: int
    currency: CurrencyCode
    reason: RefundReason
    status: RefundStatus
    refunded_at: Optional[datetime] = None
    gateway_refund_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PaymentRecord:
    """
    网关持有的支付记录；本地只保存只读缓存（frozen），由轮询更新
    """

    id: str
    amount: int
    currency: CurrencyCode
    status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    gateway_transaction_id: Optional[str] = None
    refund: Optional[PaymentRefund] = None
    booking_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(
                f"Payment amount must be greater than 0: {self.amount}",
                field="amount",
            )
        object.__setattr__(self, "created_at", _ensure_utc(self.created_at))
        object.__setattr__(self, "updated_at", _ensure_utc(self.updated_at))
        object.__setattr__(self, "paid_at", _ensure_utc(self.paid_at))

    @property
    def is_terminal(self) -> bool:
        """检查是否为终态"""
        return self.status in TERMINAL_STATUSES

    def refundable_amount(self) -> int:
        if self.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            return 0
        already = self.refund.amount if self.refund and self.refund.status != RefundStatus.FAILED else 0
        return max(self.amount - already, 0)


def pick_default_method(
    methods: Iterable[PaymentMethod],
    allowed_types: Iterable[PaymentMethodType | str] = (),
) -> Optional[PaymentMethod]:
    """返回第一个允许类型的默认支付方式；不假设默认唯一"""
    allowed = {PaymentMethodType(t) for t in allowed_types}
    for method in methods:
        if method.is_default and (not allowed or method.type in allowed):
            return method
    return None
