from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class ProductType(str, Enum):
    CONSUMABLE = "consumable"
    NON_CONSUMABLE = "non_consumable"
    RENEWABLE_SUBSCRIPTION = "renewable_subscription"


class SubscriptionPeriodType(str, Enum):
    INTRO = "intro"
    NORMAL = "normal"
    TRIAL = "trial"


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    RETRY_PERIOD = "retry_period"
    EXPIRED = "expired"
    PAUSED = "paused"


class SubscriptionStatus(str, Enum):
    UNKNOWN = "unknown"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    TRIAL = "trial"
    GRACE_PERIOD = "grace_period"
    RETRY_PERIOD = "retry_period"
    PAUSED = "paused"


class CancellationReason(str, Enum):
    REFUNDED = "refunded"
    CUSTOMER_CANCELLED = "customer_cancelled"
    DEVELOPER_CANCELLED = "developer_cancelled"
    SUBSCRIPTION_REPLACED = "subscription_replaced"
    REJECTED_PRICE_INCREASE = "rejected_price_increase"
    BILLING_ERROR = "billing_error"
    PRODUCT_NOT_AVAILABLE = "product_not_available"
    UNKNOWN = "unknown"


class RefundReason(str, Enum):
    ISSUE = "issue"
    SUBSCRIPTION_REPLACE = "subscription_replace"
    OTHER = "other"
    # Google voided purchase reasons
    REMORSE = "remorse"
    NOT_RECEIVED = "not_received"
    DEFECTIVE = "defective"
    ACCIDENTAL_PURCHASE = "accidental_purchase"
    FRAUD = "fraud"
    FRIENDLY_FRAUD = "friendly_fraud"
    CHARGEBACK = "chargeback"


class PurchaseEventType(str, Enum):
    NO_CHANGE = "no_change"
    PURCHASE = "purchase"
    REFUND = "refund"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    SUBSCRIPTION_RENEWAL_RETRY = "subscription_renewal_retry"
    SUBSCRIPTION_GRACE_PERIOD_EXPIRE = "subscription_grace_period_expire"
    SUBSCRIPTION_PRODUCT_CHANGE = "subscription_product_change"
    SUBSCRIPTION_REPLACE = "subscription_replace"
    SUBSCRIPTION_CANCEL = "subscription_cancel"
    SUBSCRIPTION_UNCANCEL = "subscription_uncancel"
    SUBSCRIPTION_EXPIRE = "subscription_expire"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def datetime_from_ms(value: str | int | None) -> datetime | None:
    if value is None or value == "":
        return None
    return EPOCH + timedelta(milliseconds=int(value))


def datetime_to_ms(value: datetime) -> int:
    return (value - EPOCH) // timedelta(milliseconds=1)


@dataclass
class Product:
    price: int
    currency: str
    id: str | None = None
    sku_ios: str | None = None
    sku_android: str | None = None
    type: ProductType = ProductType.CONSUMABLE


@dataclass
class Receipt:
    hash: str
    token: str
    platform: Platform
    receipt_date: datetime
    data: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    user_id: str | None = None


@dataclass
class Purchase:
    order_id: str
    platform: Platform
    product_sku: str
    purchase_date: datetime
    receipt_date: datetime

    id: str | None = None
    receipt_id: str | None = None
    user_id: str | None = None
    product_id: str | None = None
    product_type: ProductType = ProductType.CONSUMABLE
    is_sandbox: bool = False
    quantity: int = 1

    price: int = 0
    currency: str = ""
    converted_price: int = 0
    converted_currency: str = ""

    is_refunded: bool = False
    refund_date: datetime | None = None
    refund_reason: RefundReason | None = None

    is_subscription: bool = False
    is_trial: bool = False
    is_intro_offer_period: bool = False
    is_subscription_active: bool = False
    is_subscription_renewable: bool = False
    is_subscription_retry_period: bool = False
    is_subscription_grace_period: bool = False
    is_subscription_paused: bool = False
    is_trial_conversion: bool = False

    original_order_id: str | None = None
    original_purchase_id: str | None = None
    linked_order_id: str | None = None
    linked_purchase_id: str | None = None
    linked_token: str | None = None

    subscription_period_type: SubscriptionPeriodType | None = None
    subscription_state: SubscriptionState | None = None
    subscription_status: SubscriptionStatus | None = None
    subscription_group: str | None = None
    subscription_renewal_product_sku: str | None = None
    cancellation_reason: CancellationReason | None = None
    expiration_date: datetime | None = None
    grace_period_end_date: datetime | None = None


PURCHASE_FIELDS = tuple(f.name for f in fields(Purchase))


def purchases_equal(left: Purchase, right: Purchase) -> bool:
    """Field-by-field comparison; datetimes compare by instant."""
    return all(getattr(left, name) == getattr(right, name) for name in PURCHASE_FIELDS)


@dataclass
class ParsedReceipt:
    receipt: Receipt
    purchases: list[Purchase]


@dataclass
class PurchaseEvent:
    type: PurchaseEventType
    data: Purchase

    def to_json(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": _camelize(asdict(self.data))}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _camelize(values: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        result[_camel(key)] = value
    return result
