from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol

from sqlalchemy import desc, or_, select, update
from sqlalchemy.orm import Session

from .domain import (
    PURCHASE_FIELDS,
    CancellationReason,
    Platform,
    Product,
    ProductType,
    Purchase,
    Receipt,
    RefundReason,
    SubscriptionPeriodType,
    SubscriptionState,
    SubscriptionStatus,
)
from .models import IncomingNotificationRecord, ProductRecord, PurchaseRecord, ReceiptRecord


class Database(Protocol):
    def get_purchase_by_order_id(self, order_id: str, platform: Platform) -> Purchase | None: ...

    def get_latest_purchase_by_original_order_id(
        self, original_order_id: str, platform: Platform
    ) -> Purchase | None: ...

    def get_purchases_by_receipt_hash(self, receipt_hash: str) -> list[Purchase]: ...

    def get_purchases_by_user_id(self, user_id: str) -> list[Purchase]: ...

    def get_purchases_to_refresh(self) -> list[Purchase]: ...

    def create_purchase(self, purchase: Purchase) -> Purchase: ...

    def update_purchase(self, purchase_id: str, purchase: Purchase) -> Purchase: ...

    def get_user_id(self, order_ids: Iterable[str | None], platform: Platform) -> str | None: ...

    def sync_user_id(self, old_user_id: str, new_user_id: str) -> None: ...

    def get_receipt_by_hash(self, receipt_hash: str) -> Receipt | None: ...

    def get_receipt_by_id(self, receipt_id: str) -> Receipt | None: ...

    def create_receipt(self, receipt: Receipt) -> Receipt: ...

    def update_receipt(self, receipt: Receipt) -> Receipt: ...

    def get_product_by_sku(self, sku: str, platform: Platform) -> Product | None: ...

    def create_product(self, product: Product) -> Product: ...

    def update_product(self, product: Product) -> Product: ...

    def add_incoming_notification(self, platform: Platform, data: dict[str, Any]) -> None: ...


_PURCHASE_ENUMS: dict[str, type] = {
    "platform": Platform,
    "product_type": ProductType,
    "refund_reason": RefundReason,
    "subscription_period_type": SubscriptionPeriodType,
    "subscription_state": SubscriptionState,
    "subscription_status": SubscriptionStatus,
    "cancellation_reason": CancellationReason,
}

# Google renewals on one token share a start time, so the period end breaks ties.
_NEWEST_FIRST = (
    desc(PurchaseRecord.purchase_date),
    PurchaseRecord.expiration_date.desc().nulls_last(),
    desc(PurchaseRecord.receipt_date),
)


def _purchase_values(purchase: Purchase) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in PURCHASE_FIELDS:
        if name == "id":
            continue
        value = getattr(purchase, name)
        if name in _PURCHASE_ENUMS and value is not None:
            value = _PURCHASE_ENUMS[name](value).value
        values[name] = value
    return values


def _to_purchase(row: PurchaseRecord) -> Purchase:
    values: dict[str, Any] = {}
    for name in PURCHASE_FIELDS:
        value = getattr(row, name)
        if name in _PURCHASE_ENUMS and value is not None:
            value = _PURCHASE_ENUMS[name](value)
        values[name] = value
    return Purchase(**values)


def _to_receipt(row: ReceiptRecord) -> Receipt:
    return Receipt(
        id=row.id,
        hash=row.hash,
        token=row.token,
        platform=Platform(row.platform),
        user_id=row.user_id,
        receipt_date=row.receipt_date,
        data=row.data or {},
    )


def _to_product(row: ProductRecord) -> Product:
    return Product(
        id=row.id,
        sku_ios=row.sku_ios,
        sku_android=row.sku_android,
        type=ProductType(row.type),
        price=row.price,
        currency=row.currency,
    )


class SqlDatabase:
    """SQLAlchemy implementation of :class:`Database`. Each call commits on its own."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Purchases

    def get_purchase_by_order_id(self, order_id: str, platform: Platform) -> Purchase | None:
        stmt = select(PurchaseRecord).where(
            PurchaseRecord.order_id == order_id,
            PurchaseRecord.platform == Platform(platform).value,
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        return _to_purchase(row) if row is not None else None

    def get_latest_purchase_by_original_order_id(
        self, original_order_id: str, platform: Platform
    ) -> Purchase | None:
        stmt = (
            select(PurchaseRecord)
            .where(
                PurchaseRecord.platform == Platform(platform).value,
                or_(
                    PurchaseRecord.original_order_id == original_order_id,
                    PurchaseRecord.order_id == original_order_id,
                ),
            )
            .order_by(*_NEWEST_FIRST)
            .limit(1)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        return _to_purchase(row) if row is not None else None

    def get_purchases_by_receipt_hash(self, receipt_hash: str) -> list[Purchase]:
        stmt = (
            select(PurchaseRecord)
            .join(ReceiptRecord, ReceiptRecord.id == PurchaseRecord.receipt_id)
            .where(ReceiptRecord.hash == receipt_hash)
            .order_by(*_NEWEST_FIRST)
        )
        return [_to_purchase(row) for row in self.session.execute(stmt).scalars()]

    def get_purchases_by_user_id(self, user_id: str) -> list[Purchase]:
        stmt = (
            select(PurchaseRecord)
            .where(PurchaseRecord.user_id == user_id)
            .order_by(*_NEWEST_FIRST)
        )
        return [_to_purchase(row) for row in self.session.execute(stmt).scalars()]

    def get_purchases_to_refresh(self) -> list[Purchase]:
        """Latest purchase of every subscription chain that may still change."""
        stmt = (
            select(PurchaseRecord)
            .where(
                PurchaseRecord.is_subscription.is_(True),
                or_(
                    PurchaseRecord.is_subscription_active.is_(True),
                    PurchaseRecord.is_subscription_renewable.is_(True),
                ),
            )
            .order_by(*_NEWEST_FIRST)
        )
        seen: set[tuple[str, str]] = set()
        purchases: list[Purchase] = []
        for row in self.session.execute(stmt).scalars():
            key = (row.platform, row.original_order_id or row.order_id)
            if key in seen:
                continue
            seen.add(key)
            purchases.append(_to_purchase(row))
        return purchases

    def create_purchase(self, purchase: Purchase) -> Purchase:
        row = PurchaseRecord(**_purchase_values(purchase))
        self.session.add(row)
        self.session.commit()
        return _to_purchase(row)

    def update_purchase(self, purchase_id: str, purchase: Purchase) -> Purchase:
        row = self.session.get(PurchaseRecord, purchase_id)
        if row is None:
            raise LookupError(f"Purchase {purchase_id} does not exist")
        for name, value in _purchase_values(purchase).items():
            setattr(row, name, value)
        self.session.commit()
        return _to_purchase(row)

    def get_user_id(self, order_ids: Iterable[str | None], platform: Platform) -> str | None:
        ids = [order_id for order_id in order_ids if order_id]
        if not ids:
            return None
        stmt = (
            select(PurchaseRecord.user_id)
            .where(
                PurchaseRecord.platform == Platform(platform).value,
                PurchaseRecord.user_id.is_not(None),
                PurchaseRecord.order_id.in_(ids),
            )
            .order_by(*_NEWEST_FIRST)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def sync_user_id(self, old_user_id: str, new_user_id: str) -> None:
        self.session.execute(
            update(PurchaseRecord)
            .where(PurchaseRecord.user_id == old_user_id)
            .values(user_id=new_user_id)
        )
        self.session.execute(
            update(ReceiptRecord)
            .where(ReceiptRecord.user_id == old_user_id)
            .values(user_id=new_user_id)
        )
        self.session.commit()

    # Receipts

    def get_receipt_by_hash(self, receipt_hash: str) -> Receipt | None:
        stmt = select(ReceiptRecord).where(ReceiptRecord.hash == receipt_hash)
        row = self.session.execute(stmt).scalar_one_or_none()
        return _to_receipt(row) if row is not None else None

    def get_receipt_by_id(self, receipt_id: str) -> Receipt | None:
        row = self.session.get(ReceiptRecord, receipt_id)
        return _to_receipt(row) if row is not None else None

    def create_receipt(self, receipt: Receipt) -> Receipt:
        row = ReceiptRecord(
            hash=receipt.hash,
            token=receipt.token,
            platform=Platform(receipt.platform).value,
            user_id=receipt.user_id,
            receipt_date=receipt.receipt_date,
            data=receipt.data,
        )
        self.session.add(row)
        self.session.commit()
        return _to_receipt(row)

    def update_receipt(self, receipt: Receipt) -> Receipt:
        # Receipt content is immutable once stored; only ownership changes.
        row = self.session.get(ReceiptRecord, receipt.id)
        if row is None:
            raise LookupError(f"Receipt {receipt.id} does not exist")
        row.user_id = receipt.user_id
        self.session.commit()
        return _to_receipt(row)

    # Products

    def get_product_by_sku(self, sku: str, platform: Platform) -> Product | None:
        column = ProductRecord.sku_ios if Platform(platform) == Platform.IOS else ProductRecord.sku_android
        row = self.session.execute(select(ProductRecord).where(column == sku)).scalar_one_or_none()
        return _to_product(row) if row is not None else None

    def create_product(self, product: Product) -> Product:
        row = ProductRecord(
            sku_ios=product.sku_ios,
            sku_android=product.sku_android,
            type=ProductType(product.type).value,
            price=product.price,
            currency=product.currency,
        )
        self.session.add(row)
        self.session.commit()
        return _to_product(row)

    def update_product(self, product: Product) -> Product:
        row = self.session.get(ProductRecord, product.id)
        if row is None:
            raise LookupError(f"Product {product.id} does not exist")
        row.sku_ios = product.sku_ios
        row.sku_android = product.sku_android
        row.type = ProductType(product.type).value
        row.price = product.price
        row.currency = product.currency
        self.session.commit()
        return _to_product(row)

    def add_incoming_notification(self, platform: Platform, data: dict[str, Any]) -> None:
        self.session.add(IncomingNotificationRecord(platform=Platform(platform).value, data=data))
        self.session.commit()
