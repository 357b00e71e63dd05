"""
Apple Provider Tests
====================

Covers:
- in_app / latest_receipt_info merging
- verifyReceipt status handling and the sandbox redirect
- one-time and subscription transaction parsing
- the full token pipeline and server notifications
"""

import json

import httpx
import pytest

from conftest import DAY, NOW, frozen_clock, ms
from iapsync.apple import (
    ENDPOINT_PRODUCTION,
    ENDPOINT_SANDBOX,
    AppleProvider,
    merge_transactions,
    sort_transactions_desc,
)
from iapsync.domain import (
    CancellationReason,
    ProductType,
    PurchaseEventType,
    RefundReason,
    SubscriptionStatus,
)
from iapsync.errors import AppleValidationError, EmptyReceiptError, NotificationAuthError
from iapsync.payloads import AppleTransaction, AppleVerifyReceiptResponse

SECRET = "shared-secret"
MONTHLY = "com.example.monthly"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _txn(transaction_id: str, purchase_time_ms: int) -> AppleTransaction:
    return AppleTransaction(transaction_id=transaction_id, purchase_date_ms=str(purchase_time_ms))


def _subscription_txn(transaction_id, web_order_id, purchased, expires, trial=False) -> dict:
    return {
        "quantity": "1",
        "product_id": MONTHLY,
        "transaction_id": transaction_id,
        "original_transaction_id": "1000",
        "web_order_line_item_id": web_order_id,
        "purchase_date_ms": ms(purchased),
        "expires_date": "2024-01-01 00:00:00 Etc/GMT",
        "expires_date_ms": ms(expires),
        "is_trial_period": "true" if trial else "false",
        "is_in_intro_offer_period": "false",
        "subscription_group_identifier": "group-1",
    }


def _subscription_body(auto_renew_status: str = "1", environment: str = "Production") -> dict:
    first = _subscription_txn("1000", "w1", NOW - 40 * DAY, NOW - 10 * DAY, trial=True)
    renewal = _subscription_txn("1001", "w2", NOW - 10 * DAY, NOW + 20 * DAY)
    return {
        "status": 0,
        "environment": environment,
        "receipt": {
            "bundle_id": "com.example",
            "receipt_creation_date_ms": ms(NOW - DAY),
            "in_app": [first],
        },
        "latest_receipt": "token-1",
        "latest_receipt_info": [renewal, first],
        "pending_renewal_info": [
            {
                "product_id": MONTHLY,
                "original_transaction_id": "1000",
                "auto_renew_product_id": MONTHLY,
                "auto_renew_status": auto_renew_status,
            }
        ],
    }


def _consumable_body(**transaction) -> dict:
    in_app = {
        "quantity": "2",
        "product_id": "com.example.coins",
        "transaction_id": "5000",
        "original_transaction_id": "5000",
        "purchase_date_ms": ms(NOW - DAY),
    }
    in_app.update(transaction)
    return {
        "status": 0,
        "environment": "Production",
        "receipt": {"receipt_creation_date_ms": ms(NOW - DAY), "in_app": [in_app]},
    }


def _client(responses: dict[str, dict], calls: list) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json=responses[str(request.url)])

    return httpx.Client(transport=httpx.MockTransport(handler))


def _provider(db, responses: dict[str, dict] | None = None, calls: list | None = None):
    calls = [] if calls is None else calls
    return AppleProvider(
        db,
        shared_secret=SECRET,
        client=_client(responses or {}, calls),
        clock=frozen_clock,
    )


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

class TestMergeTransactions:
    in_app = [_txn("100", 100000), _txn("300", 300000)]
    latest = [_txn("200", 200000), _txn("300", 300000), _txn("400", 400000)]

    def test_drops_transactions_newer_than_receipt(self):
        merged = merge_transactions(self.in_app, self.latest, 300000, include_newer=False)
        assert [item.transaction_id for item in merged] == ["300", "200", "100"]

    def test_includes_newer_on_import(self):
        merged = merge_transactions(self.in_app, self.latest, 300000, include_newer=True)
        assert [item.transaction_id for item in merged] == ["400", "300", "200", "100"]

    def test_duplicate_comes_from_latest_receipt_info(self):
        latest = [AppleTransaction(transaction_id="300", purchase_date_ms="300000", quantity="9")]
        merged = merge_transactions(self.in_app, latest, 300000, include_newer=False)
        assert [item.quantity for item in merged if item.transaction_id == "300"] == ["9"]

    def test_sort_is_stable_for_equal_times(self):
        ordered = sort_transactions_desc([_txn("a", 5), _txn("b", 5), _txn("c", 9)])
        assert [item.transaction_id for item in ordered] == ["c", "a", "b"]


# ---------------------------------------------------------------------------
# verifyReceipt
# ---------------------------------------------------------------------------

class TestValidate:
    def test_production_success(self, db):
        calls: list = []
        provider = _provider(db, {ENDPOINT_PRODUCTION: _consumable_body()}, calls)

        result = provider.validate("token-1")

        assert result.status == 0
        assert [url for url, _ in calls] == [ENDPOINT_PRODUCTION]
        assert calls[0][1] == {
            "receipt-data": "token-1",
            "password": SECRET,
            "exclude-old-transactions": False,
        }

    def test_sandbox_receipt_is_retried_once_against_sandbox(self, db):
        calls: list = []
        provider = _provider(
            db,
            {
                ENDPOINT_PRODUCTION: {"status": 21007},
                ENDPOINT_SANDBOX: {**_consumable_body(), "environment": "Sandbox"},
            },
            calls,
        )

        result = provider.validate("token-1")

        assert result.environment == "Sandbox"
        assert [url for url, _ in calls] == [ENDPOINT_PRODUCTION, ENDPOINT_SANDBOX]

    def test_sandbox_redirect_from_sandbox_is_an_error(self, db):
        provider = _provider(db, {ENDPOINT_SANDBOX: {"status": 21007}})
        with pytest.raises(AppleValidationError) as info:
            provider.validate_using_environment("token-1", sandbox=True)
        assert info.value.code == 21007

    def test_expired_subscription_receipt_is_valid(self, db):
        provider = _provider(db, {ENDPOINT_PRODUCTION: {**_subscription_body(), "status": 21006}})
        assert provider.validate("token-1").status == 21006

    def test_rejected_receipt(self, db):
        calls: list = []
        provider = _provider(db, {ENDPOINT_PRODUCTION: {"status": 21003}}, calls)

        with pytest.raises(AppleValidationError) as info:
            provider.validate("token-1")

        assert info.value.code == 21003
        assert "shared secret" in info.value.explanation
        assert str(info.value).endswith("(error code: 21003)")
        assert len(calls) == 1

    def test_unknown_status_code(self):
        error = AppleValidationError(21199)
        assert error.explanation == "Apple rejected the receipt."


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseReceipt:
    def test_consumable(self, db, coins_product):
        provider = _provider(db)
        payload = AppleVerifyReceiptResponse.model_validate(_consumable_body())

        parsed = provider.parse_receipt(payload, "token-1")

        assert parsed.receipt.hash == provider.get_hash("token-1")
        assert parsed.receipt.receipt_date == NOW - DAY
        [purchase] = parsed.purchases
        assert purchase.order_id == "5000"
        assert purchase.quantity == 2
        assert purchase.is_subscription is False
        assert purchase.product_id == coins_product.id
        assert purchase.product_type == ProductType.CONSUMABLE
        assert (purchase.price, purchase.currency) == (199, "USD")
        assert (purchase.converted_price, purchase.converted_currency) == (199, "USD")
        assert purchase.subscription_status is None

    def test_unknown_product_has_no_price(self, db):
        payload = AppleVerifyReceiptResponse.model_validate(_consumable_body())
        [purchase] = _provider(db).parse_receipt(payload, "token-1").purchases
        assert purchase.product_id is None
        assert purchase.price == 0

    def test_refunded_transaction(self, db):
        payload = AppleVerifyReceiptResponse.model_validate(
            _consumable_body(cancellation_date_ms=ms(NOW), cancellation_reason="1")
        )
        [purchase] = _provider(db).parse_receipt(payload, "token-1").purchases
        assert purchase.is_refunded is True
        assert purchase.refund_date == NOW
        assert purchase.refund_reason == RefundReason.ISSUE

    def test_sandbox_environment(self, db):
        body = {**_consumable_body(), "environment": "Sandbox"}
        payload = AppleVerifyReceiptResponse.model_validate(body)
        [purchase] = _provider(db).parse_receipt(payload, "token-1").purchases
        assert purchase.is_sandbox is True

    def test_subscription_chain(self, db, monthly_product):
        payload = AppleVerifyReceiptResponse.model_validate(_subscription_body())

        renewal, first = _provider(db).parse_receipt(payload, "token-1").purchases

        assert renewal.order_id == "w2"
        assert renewal.original_order_id == "w1"
        assert renewal.linked_order_id == "w1"
        assert renewal.product_type == ProductType.RENEWABLE_SUBSCRIPTION
        assert renewal.is_subscription_active is True
        assert renewal.is_subscription_renewable is True
        assert renewal.is_trial_conversion is True
        assert renewal.expiration_date == NOW + 20 * DAY
        assert renewal.subscription_group == "group-1"
        assert renewal.subscription_status == SubscriptionStatus.ACTIVE
        assert renewal.price == monthly_product.price

        assert first.order_id == "w1"
        assert first.original_order_id == "w1"
        assert first.linked_order_id is None
        assert first.is_trial is True
        assert first.is_subscription_active is False
        assert first.subscription_status == SubscriptionStatus.EXPIRED

    def test_turned_off_auto_renew_is_cancelled(self, db):
        body = _subscription_body(auto_renew_status="0")
        body["pending_renewal_info"][0]["expiration_intent"] = "1"
        payload = AppleVerifyReceiptResponse.model_validate(body)

        renewal, _ = _provider(db).parse_receipt(payload, "token-1").purchases

        assert renewal.subscription_status == SubscriptionStatus.CANCELLED
        assert renewal.cancellation_reason == CancellationReason.CUSTOMER_CANCELLED

    def test_pending_product_change(self, db):
        body = _subscription_body()
        body["pending_renewal_info"][0]["auto_renew_product_id"] = "com.example.yearly"
        payload = AppleVerifyReceiptResponse.model_validate(body)

        renewal, _ = _provider(db).parse_receipt(payload, "token-1").purchases

        assert renewal.subscription_renewal_product_sku == "com.example.yearly"

    def test_grace_period(self, db):
        body = _subscription_body()
        body["latest_receipt_info"][0]["expires_date_ms"] = ms(NOW - DAY)
        body["pending_renewal_info"][0]["grace_period_expires_date_ms"] = ms(NOW + 3 * DAY)
        body["pending_renewal_info"][0]["is_in_billing_retry_period"] = "1"
        payload = AppleVerifyReceiptResponse.model_validate(body)

        renewal, _ = _provider(db).parse_receipt(payload, "token-1").purchases

        assert renewal.is_subscription_grace_period is True
        assert renewal.grace_period_end_date == NOW + 3 * DAY
        assert renewal.subscription_status == SubscriptionStatus.GRACE_PERIOD


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestProcessToken:
    def test_stores_chain_and_reports_purchase(self, db, monthly_product):
        provider = _provider(db, {ENDPOINT_PRODUCTION: _subscription_body()})

        event = provider.process_token("token-1", user_id="user-1")

        assert event.type == PurchaseEventType.PURCHASE
        assert event.data.order_id == "w2"
        first = db.get_purchase_by_order_id("w1", provider.platform)
        assert first.original_purchase_id == first.id
        assert event.data.original_purchase_id == first.id
        assert event.data.linked_purchase_id == first.id
        assert {item.user_id for item in db.get_purchases_by_user_id("user-1")} == {"user-1"}

    def test_same_receipt_twice_is_no_change(self, db, monthly_product):
        provider = _provider(db, {ENDPOINT_PRODUCTION: _subscription_body()})
        provider.process_token("token-1")

        event = provider.process_token("token-1")

        assert event.type == PurchaseEventType.NO_CHANGE

    def test_receipt_without_transactions(self, db):
        body = {"status": 0, "receipt": {"receipt_creation_date_ms": ms(NOW), "in_app": []}}
        provider = _provider(db, {ENDPOINT_PRODUCTION: body})
        with pytest.raises(EmptyReceiptError):
            provider.process_token("token-1")


class TestServerNotification:
    def _notification(self, password: str = SECRET, receipt: str | None = "token-1") -> dict:
        return {
            "notification_type": "DID_RENEW",
            "password": password,
            "auto_renew_product_id": MONTHLY,
            "unified_receipt": {"latest_receipt": receipt},
        }

    def test_processes_latest_receipt_with_newer_transactions(self, db, monthly_product):
        body = _subscription_body()
        body["receipt"]["receipt_creation_date_ms"] = ms(NOW - 30 * DAY)
        provider = _provider(db, {ENDPOINT_PRODUCTION: body})

        event = provider.server_notification(self._notification())

        assert event.type == PurchaseEventType.PURCHASE
        assert event.data.order_id == "w2"

    def test_wrong_password(self, db):
        with pytest.raises(NotificationAuthError):
            _provider(db).server_notification(self._notification(password="nope"))

    def test_missing_receipt(self, db):
        with pytest.raises(EmptyReceiptError):
            _provider(db).server_notification(self._notification(receipt=None))
