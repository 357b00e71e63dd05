from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from .classifier import classify
from .currency import CurrencyConverter
from .domain import (
    CancellationReason,
    ParsedReceipt,
    Platform,
    ProductType,
    Purchase,
    PurchaseEvent,
    PurchaseEventType,
    Receipt,
    RefundReason,
    datetime_from_ms,
    utcnow,
)
from .errors import GoogleValidationError, NotificationAuthError
from .google_client import GooglePlayClient
from .notifications import decode_pubsub_envelope
from .payloads import (
    GoogleProductPurchase,
    GoogleSubscriptionPurchase,
    GoogleVoidedPurchase,
    google_payload_adapter,
)
from .provider import IAPProvider
from .repository import Database

logger = logging.getLogger("iapsync.google")

PAYMENT_PENDING = 0
PAYMENT_RECEIVED = 1
PAYMENT_FREE_TRIAL = 2

PURCHASE_TYPE_TEST = 0

CANCEL_REASONS = {
    1: CancellationReason.BILLING_ERROR,
    2: CancellationReason.SUBSCRIPTION_REPLACED,
    3: CancellationReason.DEVELOPER_CANCELLED,
}

# https://developers.google.com/android-publisher/voided-purchases
VOID_REASONS = {
    0: RefundReason.OTHER,
    1: RefundReason.REMORSE,
    2: RefundReason.NOT_RECEIVED,
    3: RefundReason.DEFECTIVE,
    4: RefundReason.ACCIDENTAL_PURCHASE,
    5: RefundReason.FRAUD,
    6: RefundReason.FRIENDLY_FRAUD,
    7: RefundReason.CHARGEBACK,
}


def parse_order_chain(order_id: str) -> tuple[str, str | None]:
    """Split a renewal order id like ``GPA.1..2`` into ``(original, linked)`` order ids."""
    original, separator, counter = order_id.partition("..")
    if not separator or not counter.isdigit():
        return order_id, None
    number = int(counter)
    if number == 0:
        return original, original
    return original, f"{original}..{number - 1}"


class GoogleProvider(IAPProvider):
    platform = Platform.ANDROID

    def __init__(
        self,
        db: Database,
        client: GooglePlayClient | None,
        package_name: str,
        converter: CurrencyConverter | None = None,
        token_hash_pepper: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(db, converter=converter, token_hash_pepper=token_hash_pepper, clock=clock)
        self.client = client
        self.package_name = package_name

    @property
    def play(self) -> GooglePlayClient:
        if self.client is None:
            raise RuntimeError("GOOGLE_SERVICE_ACCOUNT_JSON is not configured")
        return self.client

    # Validation

    def validate_product(self, token: str, sku: str) -> GoogleProductPurchase:
        raw = self.play.get_product_purchase(token, sku)
        raw.setdefault("kind", "androidpublisher#productPurchase")
        return GoogleProductPurchase.model_validate(raw)

    def validate_subscription(self, token: str, sku: str) -> GoogleSubscriptionPurchase:
        raw = self.play.get_subscription_purchase(token, sku)
        raw.setdefault("kind", "androidpublisher#subscriptionPurchase")
        return GoogleSubscriptionPurchase.model_validate(raw)

    def validate(
        self, token: str, sku: str | None = None
    ) -> GoogleProductPurchase | GoogleSubscriptionPurchase:
        """Look the token up as a one-time product, then as a subscription.

        Google answers 400 ``invalid`` when a subscription token is queried on the products
        endpoint, which is the only error that triggers the second lookup.
        """
        if not sku:
            raise GoogleValidationError("A product sku is required for Google purchases", 400)
        try:
            return self.validate_product(token, sku)
        except GoogleValidationError as exc:
            if not exc.is_invalid:
                raise
            logger.info("Token rejected as a product purchase, retrying as subscription")
            return self.validate_subscription(token, sku)

    # Parsing

    def parse_receipt(
        self,
        payload: GoogleProductPurchase | GoogleSubscriptionPurchase | dict[str, Any],
        token: str,
        sku: str | None = None,
        include_newer: bool = False,
    ) -> ParsedReceipt:
        if isinstance(payload, dict):
            payload = google_payload_adapter.validate_python(payload)

        if isinstance(payload, GoogleSubscriptionPurchase):
            purchase = self.process_subscription_transaction(payload, sku or "", token)
        elif isinstance(payload, GoogleProductPurchase):
            purchase = self.process_purchase_transaction(payload, sku or "", token)
        else:
            raise TypeError(f"Cannot parse a receipt from {payload.kind}")

        receipt = Receipt(
            hash=self.get_hash(token),
            token=token,
            platform=Platform.ANDROID,
            receipt_date=purchase.receipt_date,
            data=payload.raw(),
        )
        return ParsedReceipt(receipt=receipt, purchases=[purchase])

    def order_id(self, order_id: str | None, token: str) -> str:
        # License testers get purchases without an order id.
        return order_id or f"token:{self.get_hash(token)}"

    def carry_refund(self, purchase: Purchase) -> None:
        # Refunds only arrive through voided purchases, a fresh payload never carries them.
        stored = self.db.get_purchase_by_order_id(purchase.order_id, Platform.ANDROID)
        if stored is not None and stored.is_refunded:
            purchase.is_refunded = True
            purchase.refund_date = stored.refund_date
            purchase.refund_reason = stored.refund_reason

    def process_purchase_transaction(
        self, transaction: GoogleProductPurchase, sku: str, token: str
    ) -> Purchase:
        purchase_date = datetime_from_ms(transaction.purchase_time_millis) or self.clock()
        purchase = Purchase(
            order_id=self.order_id(transaction.order_id, token),
            platform=Platform.ANDROID,
            product_sku=sku,
            purchase_date=purchase_date,
            receipt_date=purchase_date,
            is_sandbox=transaction.purchase_type == PURCHASE_TYPE_TEST,
            quantity=transaction.quantity or 1,
        )

        product = self.get_product(sku)
        self.apply_catalog_pricing(purchase, product)
        if product is not None:
            purchase.product_type = product.type

        self.carry_refund(purchase)
        return purchase

    def process_subscription_transaction(
        self, transaction: GoogleSubscriptionPurchase, sku: str, token: str
    ) -> Purchase:
        now = self.clock()
        order_id = self.order_id(transaction.order_id, token)
        original_order_id, linked_order_id = parse_order_chain(order_id)

        linked: Purchase | None = None
        if transaction.linked_purchase_token:
            previous = self.db.get_purchases_by_receipt_hash(
                self.get_hash(transaction.linked_purchase_token)
            )
            if previous:
                linked = previous[0]
                linked_order_id = linked.order_id
                original_order_id = linked.original_order_id or linked.order_id
        if linked is None and linked_order_id:
            linked = self.db.get_purchase_by_order_id(linked_order_id, Platform.ANDROID)

        expiration_date = datetime_from_ms(transaction.expiry_time_millis)
        expired = expiration_date is None or now >= expiration_date
        auto_renewing = transaction.auto_renewing
        payment_state = transaction.payment_state

        purchase = Purchase(
            order_id=order_id,
            platform=Platform.ANDROID,
            product_sku=sku,
            purchase_date=datetime_from_ms(transaction.start_time_millis) or now,
            # The same token is revalidated as the subscription moves on.
            receipt_date=now,
            product_type=ProductType.RENEWABLE_SUBSCRIPTION,
            is_sandbox=transaction.purchase_type == PURCHASE_TYPE_TEST,
            is_subscription=True,
            is_trial=payment_state == PAYMENT_FREE_TRIAL,
            # Google reports free trials as the intro offer.
            is_intro_offer_period=payment_state == PAYMENT_FREE_TRIAL,
            is_subscription_active=not expired,
            is_subscription_renewable=auto_renewing,
            is_subscription_retry_period=expired and auto_renewing and payment_state == PAYMENT_PENDING,
            is_subscription_grace_period=(
                not expired and auto_renewing and payment_state == PAYMENT_PENDING
            ),
            is_subscription_paused=expired and auto_renewing and payment_state == PAYMENT_RECEIVED,
            original_order_id=original_order_id,
            linked_order_id=linked_order_id,
            linked_token=transaction.linked_purchase_token,
            expiration_date=expiration_date,
        )
        if purchase.is_subscription_grace_period:
            purchase.grace_period_end_date = expiration_date

        if transaction.cancel_survey_result:
            purchase.cancellation_reason = CancellationReason.CUSTOMER_CANCELLED
        else:
            purchase.cancellation_reason = CANCEL_REASONS.get(transaction.cancel_reason)

        product = self.get_product(sku)
        self.apply_catalog_pricing(purchase, product)
        if transaction.price_amount_micros and transaction.price_currency_code:
            purchase.price = int(transaction.price_amount_micros) // 10_000
            purchase.currency = transaction.price_currency_code
            self.apply_converted_pricing(purchase, product)

        purchase.is_trial_conversion = (
            linked is not None and linked.is_trial and payment_state != PAYMENT_FREE_TRIAL
        )

        self.carry_refund(purchase)
        if purchase.is_refunded:
            self.clear_subscription_flags(purchase)
            purchase.cancellation_reason = CancellationReason.REFUNDED
        return classify(purchase, now)

    def clear_subscription_flags(self, purchase: Purchase) -> None:
        purchase.is_subscription_active = False
        purchase.is_subscription_renewable = False
        purchase.is_subscription_retry_period = False
        purchase.is_subscription_grace_period = False
        purchase.is_subscription_paused = False

    # Refunds

    def process_voided_purchase(self, voided: GoogleVoidedPurchase) -> PurchaseEvent | None:
        if not voided.order_id:
            logger.warning("Voided purchase without order id ignored")
            return None
        stored = self.db.get_purchase_by_order_id(voided.order_id, Platform.ANDROID)
        if stored is None:
            logger.warning("Voided purchase for unknown order %s", voided.order_id)
            return None
        if stored.is_refunded:
            return PurchaseEvent(type=PurchaseEventType.NO_CHANGE, data=stored)

        refunded = replace(
            stored,
            is_refunded=True,
            refund_date=datetime_from_ms(voided.voided_time_millis) or self.clock(),
            refund_reason=VOID_REASONS.get(voided.voided_reason),
        )
        if refunded.is_subscription:
            self.clear_subscription_flags(refunded)
            refunded.cancellation_reason = CancellationReason.REFUNDED
            classify(refunded, self.clock())

        saved = self.db.update_purchase(stored.id, refunded)
        logger.info("Order %s voided (%s)", saved.order_id, saved.refund_reason)
        return PurchaseEvent(type=PurchaseEventType.REFUND, data=saved)

    def sync_voided_purchases(self, start_time_ms: int | None = None) -> list[PurchaseEvent]:
        events = []
        for raw in self.play.list_voided_purchases(start_time_ms):
            voided = GoogleVoidedPurchase.model_validate(raw)
            event = self.process_voided_purchase(voided)
            if event is not None:
                events.append(event)
        return events

    # Notifications

    def server_notification(self, notification: dict[str, Any]) -> PurchaseEvent | None:
        message = decode_pubsub_envelope(notification)
        if message.package_name != self.package_name:
            raise NotificationAuthError(f"Unexpected package name {message.package_name!r}")

        if message.subscription_notification is not None:
            sub = message.subscription_notification
            logger.info("Google subscription notification %s", sub.notification_type)
            payload = self.validate_subscription(sub.purchase_token, sub.subscription_id)
            parsed = self.parse_receipt(payload, sub.purchase_token, sub.subscription_id, True)
            return self.process_parsed_receipt(parsed)

        if message.one_time_product_notification is not None:
            one_time = message.one_time_product_notification
            logger.info("Google one-time product notification %s", one_time.notification_type)
            payload = self.validate_product(one_time.purchase_token, one_time.sku)
            parsed = self.parse_receipt(payload, one_time.purchase_token, one_time.sku, True)
            return self.process_parsed_receipt(parsed)

        if message.voided_purchase_notification is not None:
            void = message.voided_purchase_notification
            return self.process_voided_purchase(
                GoogleVoidedPurchase(
                    orderId=void.order_id,
                    purchaseToken=void.purchase_token,
                    voidedTimeMillis=message.event_time_millis,
                )
            )

        logger.info("Google test notification ignored")
        return None
