from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

import httpx

from .classifier import classify, get_cancellation_reason
from .currency import CurrencyConverter
from .domain import (
    EPOCH,
    ParsedReceipt,
    Platform,
    ProductType,
    Purchase,
    PurchaseEvent,
    Receipt,
    RefundReason,
    datetime_from_ms,
    utcnow,
)
from .errors import AppleValidationError, EmptyReceiptError, NotificationAuthError
from .payloads import (
    ApplePendingRenewalInfo,
    AppleServerNotification,
    AppleTransaction,
    AppleVerifyReceiptResponse,
)
from .provider import IAPProvider
from .repository import Database
from .security import secrets_match

logger = logging.getLogger("iapsync.apple")

ENDPOINT_PRODUCTION = "https://buy.itunes.apple.com/verifyReceipt"
ENDPOINT_SANDBOX = "https://sandbox.itunes.apple.com/verifyReceipt"

STATUS_SUCCESS = 0
STATUS_VALID_BUT_SUBSCRIPTION_EXPIRED = 21006
STATUS_USE_TEST_ENVIRONMENT = 21007


def sort_transactions_desc(transactions: Iterable[AppleTransaction]) -> list[AppleTransaction]:
    # sorted() is stable with reverse=True, equal timestamps keep their order.
    return sorted(transactions, key=lambda item: item.purchase_time, reverse=True)


def merge_transactions(
    in_app: list[AppleTransaction],
    latest_receipt_info: list[AppleTransaction],
    receipt_creation_date_ms: int,
    include_newer: bool,
) -> list[AppleTransaction]:
    """Merge ``in_app`` and ``latest_receipt_info`` into one list, newest first.

    Transactions present in both arrays are taken from ``latest_receipt_info``. Unless
    ``include_newer`` is set, entries purchased after the receipt was created are dropped.
    """
    in_app = sort_transactions_desc(in_app)
    latest_ids = {item.transaction_id for item in latest_receipt_info}
    additional = [item for item in in_app if item.transaction_id not in latest_ids]

    if not include_newer:
        latest_receipt_info = [
            item for item in latest_receipt_info if item.purchase_time <= receipt_creation_date_ms
        ]

    return sort_transactions_desc([*latest_receipt_info, *additional])


def get_original_order(
    transaction: AppleTransaction, transactions: Iterable[AppleTransaction]
) -> AppleTransaction | None:
    return next(
        (item for item in transactions if item.transaction_id == transaction.original_transaction_id),
        None,
    )


class AppleProvider(IAPProvider):
    platform = Platform.IOS

    def __init__(
        self,
        db: Database,
        shared_secret: str,
        converter: CurrencyConverter | None = None,
        token_hash_pepper: str = "",
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(db, converter=converter, token_hash_pepper=token_hash_pepper, clock=clock)
        self.shared_secret = shared_secret
        self.client = client or httpx.Client(timeout=timeout_seconds)

    # Validation

    def validate_using_environment(self, token: str, sandbox: bool) -> AppleVerifyReceiptResponse:
        endpoint = ENDPOINT_SANDBOX if sandbox else ENDPOINT_PRODUCTION
        response = self.client.post(
            endpoint,
            json={
                "receipt-data": token,
                "password": self.shared_secret,
                "exclude-old-transactions": False,
            },
        )
        response.raise_for_status()
        body = AppleVerifyReceiptResponse.model_validate(response.json())

        if body.status in (STATUS_SUCCESS, STATUS_VALID_BUT_SUBSCRIPTION_EXPIRED):
            return body
        if body.status == STATUS_USE_TEST_ENVIRONMENT and not sandbox:
            logger.info("Production verifyReceipt redirected to sandbox")
            return self.validate_using_environment(token, sandbox=True)
        raise AppleValidationError(body.status)

    def validate(self, token: str, sku: str | None = None) -> AppleVerifyReceiptResponse:
        """Validate a base64 StoreKit receipt, production first and sandbox on redirect.

        ``sku`` is unused, Apple receipts carry every product they contain.
        """
        return self.validate_using_environment(token, sandbox=False)

    def server_notification(self, notification: dict[str, Any]) -> PurchaseEvent:
        body = AppleServerNotification.model_validate(notification)
        if not secrets_match(body.password, self.shared_secret):
            raise NotificationAuthError("Apple notification password does not match")
        token = body.unified_receipt.latest_receipt
        if not token:
            raise EmptyReceiptError("Apple notification carries no receipt")
        logger.info("Apple server notification %s", body.notification_type)
        return self.process_token(token, body.auto_renew_product_id, include_newer=True)

    # Parsing

    def parse_receipt(
        self,
        payload: AppleVerifyReceiptResponse,
        token: str,
        sku: str | None = None,
        include_newer: bool = False,
    ) -> ParsedReceipt:
        # receipt.in_app holds the transactions of the validated receipt (and some, not all,
        # subscription transactions); latest_receipt_info holds the full subscription history
        # as of validation time.
        receipt_creation_date_ms = self.receipt_creation_date_ms(payload)
        receipt_date = self.receipt_date(payload)

        receipt = Receipt(
            hash=self.get_hash(token),
            token=token,
            platform=Platform.IOS,
            receipt_date=receipt_date,
            data=payload.raw(),
        )

        transactions = merge_transactions(
            self.in_app(payload), payload.latest_receipt_info, receipt_creation_date_ms, include_newer
        )
        purchases = []
        for transaction in transactions:
            if transaction.is_subscription:
                purchases.append(self.process_subscription_transaction(transaction, payload))
            else:
                purchases.append(
                    self.process_purchase_transaction(
                        transaction, receipt_date, self.is_sandbox(payload)
                    )
                )
        return ParsedReceipt(receipt=receipt, purchases=purchases)

    def is_sandbox(self, payload: AppleVerifyReceiptResponse) -> bool:
        return payload.environment == "Sandbox"

    def in_app(self, payload: AppleVerifyReceiptResponse) -> list[AppleTransaction]:
        return payload.receipt.in_app if payload.receipt else []

    def receipt_creation_date_ms(self, payload: AppleVerifyReceiptResponse) -> int:
        if payload.receipt is None:
            return 0
        return int(payload.receipt.receipt_creation_date_ms or 0)

    def receipt_date(self, payload: AppleVerifyReceiptResponse) -> datetime:
        return EPOCH + timedelta(milliseconds=self.receipt_creation_date_ms(payload))

    def process_purchase_transaction(
        self, transaction: AppleTransaction, receipt_date: datetime, is_sandbox: bool
    ) -> Purchase:
        purchase = Purchase(
            order_id=transaction.transaction_id or "",
            platform=Platform.IOS,
            product_sku=transaction.product_id or "",
            purchase_date=EPOCH + timedelta(milliseconds=transaction.purchase_time),
            receipt_date=receipt_date,
            is_sandbox=is_sandbox,
            is_subscription=transaction.is_subscription,
            quantity=int(transaction.quantity or 1),
            is_refunded=bool(transaction.cancellation_date_ms),
            refund_date=datetime_from_ms(transaction.cancellation_date_ms),
        )

        product = self.get_product(purchase.product_sku)
        self.apply_catalog_pricing(purchase, product)
        if product is not None:
            purchase.product_type = product.type

        if purchase.is_refunded:
            if transaction.cancellation_reason == "1":
                purchase.refund_reason = RefundReason.ISSUE
            elif transaction.cancellation_reason == "0":
                purchase.refund_reason = RefundReason.OTHER
        return purchase

    def process_subscription_transaction(
        self, transaction: AppleTransaction, payload: AppleVerifyReceiptResponse
    ) -> Purchase:
        purchase = self.process_purchase_transaction(
            transaction, self.receipt_date(payload), self.is_sandbox(payload)
        )

        history = sort_transactions_desc([*self.in_app(payload), *payload.latest_receipt_info])

        prior_transactions = [
            item
            for item in history
            if item.original_transaction_id == transaction.original_transaction_id
            and item.transaction_id != transaction.transaction_id
            and item.purchase_time <= transaction.purchase_time
        ]

        # Renewal info only describes the newest transaction of the chain.
        renewal_info: ApplePendingRenewalInfo | None = None
        chain = [
            item for item in history if item.original_transaction_id == transaction.original_transaction_id
        ]
        if chain and chain[0].transaction_id == transaction.transaction_id:
            renewal_info = next(
                (
                    item
                    for item in payload.pending_renewal_info
                    if item.original_transaction_id == transaction.original_transaction_id
                    and item.product_id == transaction.product_id
                ),
                None,
            )

        original_order = get_original_order(transaction, history)
        linked_order = prior_transactions[0] if prior_transactions else None

        # Subscriptions are identified by web_order_line_item_id, not transaction_id.
        purchase.order_id = transaction.web_order_line_item_id or transaction.transaction_id or ""
        purchase.original_order_id = original_order.web_order_line_item_id if original_order else None
        purchase.linked_order_id = linked_order.web_order_line_item_id if linked_order else None
        purchase.product_type = ProductType.RENEWABLE_SUBSCRIPTION
        purchase.is_subscription = True
        purchase.expiration_date = datetime_from_ms(transaction.expires_date_ms)
        purchase.is_trial = transaction.is_trial_period == "true"
        purchase.is_intro_offer_period = transaction.is_in_intro_offer_period == "true"

        if renewal_info is not None:
            purchase.is_subscription_renewable = renewal_info.auto_renew_status == "1"
            purchase.is_subscription_retry_period = renewal_info.is_in_billing_retry_period == "1"
            if (
                renewal_info.auto_renew_product_id
                and renewal_info.auto_renew_product_id != purchase.product_sku
            ):
                purchase.subscription_renewal_product_sku = renewal_info.auto_renew_product_id

        if original_order is not None and original_order.subscription_group_identifier:
            purchase.subscription_group = original_order.subscription_group_identifier

        # A trial conversion is a paid period directly following a trial.
        if not purchase.is_trial and linked_order is not None:
            purchase.is_trial_conversion = linked_order.is_trial_period == "true"

        if not purchase.is_refunded:
            now = self.clock()
            if purchase.expiration_date is not None and now < purchase.expiration_date:
                purchase.is_subscription_active = True
            elif renewal_info is not None and renewal_info.grace_period_expires_date_ms:
                purchase.grace_period_end_date = datetime_from_ms(
                    renewal_info.grace_period_expires_date_ms
                )
                if purchase.grace_period_end_date and now < purchase.grace_period_end_date:
                    purchase.is_subscription_active = True
                    purchase.is_subscription_grace_period = True

        purchase.cancellation_reason = get_cancellation_reason(purchase, renewal_info)
        return classify(purchase, self.clock())
