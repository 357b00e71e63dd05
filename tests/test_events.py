"""
Purchase Event Tests
====================

Event classification between the stored chain head and the reconciled purchase.
"""

from dataclasses import replace

from conftest import DAY, NOW
from iapsync.domain import Platform, Purchase, PurchaseEventType, SubscriptionStatus
from iapsync.events import get_purchase_event_type


def _head(**overrides) -> Purchase:
    values = dict(
        order_id="w2",
        original_order_id="w1",
        platform=Platform.IOS,
        product_sku="com.example.monthly",
        purchase_date=NOW - DAY,
        receipt_date=NOW,
        is_subscription=True,
        is_subscription_active=True,
        is_subscription_renewable=True,
        subscription_status=SubscriptionStatus.ACTIVE,
    )
    values.update(overrides)
    return Purchase(**values)


def test_one_time_purchase_is_always_a_purchase():
    current = _head(is_subscription=False)
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.PURCHASE


def test_first_purchase_of_a_chain():
    assert get_purchase_event_type(None, _head()) == PurchaseEventType.PURCHASE


def test_other_chain_is_a_purchase():
    previous = _head(original_order_id="other")
    assert get_purchase_event_type(previous, _head()) == PurchaseEventType.PURCHASE


def test_resubscribe_after_expiry_is_a_purchase():
    previous = _head(subscription_status=SubscriptionStatus.EXPIRED)
    assert get_purchase_event_type(previous, _head(order_id="w3")) == PurchaseEventType.PURCHASE


def test_refund():
    current = _head(is_refunded=True, subscription_status=SubscriptionStatus.REFUNDED)
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.REFUND


def test_already_refunded_is_not_refunded_again():
    previous = _head(is_refunded=True, subscription_status=SubscriptionStatus.REFUNDED)
    assert get_purchase_event_type(previous, replace(previous)) == PurchaseEventType.NO_CHANGE


def test_sku_change_is_a_replace():
    current = _head(product_sku="com.example.yearly")
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.SUBSCRIPTION_REPLACE


def test_retry():
    current = _head(subscription_status=SubscriptionStatus.RETRY_PERIOD)
    assert (
        get_purchase_event_type(_head(), current)
        == PurchaseEventType.SUBSCRIPTION_RENEWAL_RETRY
    )


def test_cancel():
    current = _head(subscription_status=SubscriptionStatus.CANCELLED)
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.SUBSCRIPTION_CANCEL


def test_expire():
    current = _head(subscription_status=SubscriptionStatus.EXPIRED)
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.SUBSCRIPTION_EXPIRE


def test_grace_period_expire():
    previous = _head(
        is_subscription_grace_period=True, subscription_status=SubscriptionStatus.GRACE_PERIOD
    )
    current = _head(subscription_status=SubscriptionStatus.EXPIRED)
    assert (
        get_purchase_event_type(previous, current)
        == PurchaseEventType.SUBSCRIPTION_GRACE_PERIOD_EXPIRE
    )


def test_uncancel():
    previous = _head(subscription_status=SubscriptionStatus.CANCELLED)
    assert get_purchase_event_type(previous, _head()) == PurchaseEventType.SUBSCRIPTION_UNCANCEL


def test_product_change_scheduled():
    previous = _head(subscription_status=SubscriptionStatus.TRIAL)
    current = _head(subscription_renewal_product_sku="com.example.yearly")
    assert (
        get_purchase_event_type(previous, current)
        == PurchaseEventType.SUBSCRIPTION_PRODUCT_CHANGE
    )


def test_other_status_change_is_no_change():
    previous = _head(subscription_status=SubscriptionStatus.TRIAL)
    assert get_purchase_event_type(previous, _head()) == PurchaseEventType.NO_CHANGE


def test_renewal():
    current = _head(order_id="w3", purchase_date=NOW)
    assert get_purchase_event_type(_head(), current) == PurchaseEventType.SUBSCRIPTION_RENEWAL


def test_nothing_changed():
    assert get_purchase_event_type(_head(), _head()) == PurchaseEventType.NO_CHANGE
