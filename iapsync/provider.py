from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .currency import CurrencyConverter
from .domain import ParsedReceipt, Platform, Product, Purchase, PurchaseEvent, utcnow
from .errors import ConversionError
from .reconcile import ReceiptReconciler
from .repository import Database
from .security import hash_purchase_token

logger = logging.getLogger("iapsync.provider")


class IAPProvider:
    """Base class for store providers.

    Subclasses implement ``validate``, ``parse_receipt`` and ``server_notification``; the
    ``process_token`` pipeline is shared.
    """

    platform: Platform

    def __init__(
        self,
        db: Database,
        converter: CurrencyConverter | None = None,
        token_hash_pepper: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.converter = converter
        self.token_hash_pepper = token_hash_pepper
        self.clock = clock
        self.reconciler = ReceiptReconciler(db)

    def process_token(
        self,
        token: str,
        sku: str | None = None,
        include_newer: bool = False,
        user_id: str | None = None,
        sync_user_id: bool = False,
    ) -> PurchaseEvent:
        payload = self.validate(token, sku)
        parsed = self.parse_receipt(payload, token, sku, include_newer)
        return self.process_parsed_receipt(parsed, user_id, sync_user_id)

    def process_parsed_receipt(
        self,
        parsed: ParsedReceipt,
        user_id: str | None = None,
        sync_user_id: bool = False,
    ) -> PurchaseEvent:
        return self.reconciler.process(parsed, user_id, sync_user_id)

    def validate(self, token: str, sku: str | None = None) -> Any:
        raise NotImplementedError

    def parse_receipt(
        self, payload: Any, token: str, sku: str | None, include_newer: bool
    ) -> ParsedReceipt:
        raise NotImplementedError

    def server_notification(self, notification: dict[str, Any]) -> PurchaseEvent | None:
        raise NotImplementedError

    def get_hash(self, token: str) -> str:
        return hash_purchase_token(token, self.token_hash_pepper)

    def get_product(self, sku: str | None) -> Product | None:
        if not sku:
            return None
        return self.db.get_product_by_sku(sku, self.platform)

    def apply_catalog_pricing(self, purchase: Purchase, product: Product | None) -> None:
        # The store does not tell us what the user paid, so the base product price is used.
        if product is None:
            return
        purchase.product_id = product.id
        purchase.price = product.price
        purchase.currency = product.currency
        purchase.converted_price = product.price
        purchase.converted_currency = product.currency

    def apply_converted_pricing(self, purchase: Purchase, product: Product | None) -> None:
        """Convert the transaction price into the catalog currency, best effort."""
        purchase.converted_price = purchase.price
        purchase.converted_currency = purchase.currency
        if product is None or not purchase.currency or purchase.currency == product.currency:
            return
        if self.converter is None:
            purchase.converted_price = product.price
            purchase.converted_currency = product.currency
            return
        try:
            purchase.converted_price = self.converter.convert(
                purchase.price,
                purchase.currency,
                product.currency,
                purchase.purchase_date,
                now=self.clock(),
            )
            purchase.converted_currency = product.currency
        except ConversionError as exc:
            logger.warning(
                "Currency conversion failed for order %s, using catalog price: %s",
                purchase.order_id,
                exc,
            )
            purchase.converted_price = product.price
            purchase.converted_currency = product.currency
