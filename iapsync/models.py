from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base, UTCDateTime


def _uuid() -> str:
    return str(uuid.uuid4())


class ProductRecord(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    sku_ios: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    sku_android: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="consumable")
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="")


class ReceiptRecord(Base):
    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    receipt_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_receipts_user_id", "user_id"),)


class PurchaseRecord(Base):
    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    receipt_id: Mapped[str | None] = mapped_column(ForeignKey("receipts.id"), nullable=True)
    product_id: Mapped[str | None] = mapped_column(ForeignKey("products.id"), nullable=True)
    original_purchase_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    linked_purchase_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(255), nullable=False)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="")
    converted_price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    converted_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="")

    purchase_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    receipt_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    is_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    is_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_intro_offer_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_subscription_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_subscription_renewable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_subscription_retry_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_subscription_grace_period: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_subscription_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_trial_conversion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    original_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    subscription_period_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subscription_state: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    subscription_group: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_renewal_product_sku: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    grace_period_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("platform", "order_id", name="uq_purchases_platform_order"),
        Index("idx_purchases_original_order_id", "original_order_id"),
        Index("idx_purchases_user_id", "user_id"),
        Index("idx_purchases_receipt_id", "receipt_id"),
    )


class IncomingNotificationRecord(Base):
    __tablename__ = "incoming_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, server_default=func.now()
    )
