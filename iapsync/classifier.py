from __future__ import annotations

from datetime import datetime

from .domain import (
    CancellationReason,
    Purchase,
    RefundReason,
    SubscriptionPeriodType,
    SubscriptionState,
    SubscriptionStatus,
    utcnow,
)
from .payloads import ApplePendingRenewalInfo


def get_subscription_period_type(purchase: Purchase) -> SubscriptionPeriodType:
    if purchase.is_trial:
        return SubscriptionPeriodType.TRIAL
    if purchase.is_intro_offer_period:
        return SubscriptionPeriodType.INTRO
    return SubscriptionPeriodType.NORMAL


def get_subscription_state(purchase: Purchase) -> SubscriptionState:
    if purchase.is_subscription_active:
        return SubscriptionState.ACTIVE
    # Grace period is shorter than the retry period so it goes first.
    if purchase.is_subscription_grace_period:
        return SubscriptionState.GRACE_PERIOD
    if purchase.is_subscription_retry_period:
        return SubscriptionState.RETRY_PERIOD
    return SubscriptionState.EXPIRED


def get_subscription_status(
    purchase: Purchase, now: datetime | None = None
) -> SubscriptionStatus | None:
    if not purchase.is_subscription:
        return None

    now = now or utcnow()
    state = purchase.subscription_state

    if purchase.is_refunded and purchase.refund_reason != RefundReason.SUBSCRIPTION_REPLACE:
        return SubscriptionStatus.REFUNDED
    if state == SubscriptionState.PAUSED:
        return SubscriptionStatus.PAUSED
    if state == SubscriptionState.GRACE_PERIOD or purchase.is_subscription_grace_period:
        return SubscriptionStatus.GRACE_PERIOD
    if state == SubscriptionState.RETRY_PERIOD or purchase.is_subscription_retry_period:
        return SubscriptionStatus.RETRY_PERIOD
    if state == SubscriptionState.EXPIRED or (
        not purchase.is_subscription_active and not purchase.is_subscription_renewable
    ):
        return SubscriptionStatus.EXPIRED
    # Cancelled trials expire immediately, so check them before normal subscriptions.
    if purchase.subscription_period_type == SubscriptionPeriodType.TRIAL:
        if not purchase.is_subscription_renewable:
            return SubscriptionStatus.EXPIRED
        return SubscriptionStatus.TRIAL
    if purchase.is_subscription_active and not purchase.is_subscription_renewable:
        if purchase.expiration_date is not None and now < purchase.expiration_date:
            return SubscriptionStatus.CANCELLED
        return SubscriptionStatus.EXPIRED
    if state == SubscriptionState.ACTIVE:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.UNKNOWN


def get_cancellation_reason(
    purchase: Purchase, renewal_info: ApplePendingRenewalInfo | None = None
) -> CancellationReason | None:
    """Map Apple's ``expiration_intent`` onto a cancellation reason.

    See https://developer.apple.com/documentation/appstorereceipts/expiration_intent
    """
    if purchase.is_refunded:
        return CancellationReason.REFUNDED
    if renewal_info is None:
        return None

    intent = renewal_info.expiration_intent
    if intent == "1":
        return CancellationReason.CUSTOMER_CANCELLED
    if purchase.is_subscription_active:
        return None
    if intent == "2" and not purchase.is_subscription_retry_period:
        return CancellationReason.BILLING_ERROR
    if intent == "3":
        return CancellationReason.REJECTED_PRICE_INCREASE
    if intent == "4":
        return CancellationReason.PRODUCT_NOT_AVAILABLE
    if intent == "5":
        return CancellationReason.UNKNOWN
    return None


def classify(purchase: Purchase, now: datetime | None = None) -> Purchase:
    purchase.subscription_period_type = get_subscription_period_type(purchase)
    purchase.subscription_state = get_subscription_state(purchase)
    if purchase.is_subscription_paused:
        # Only Google reports paused subscriptions.
        purchase.subscription_state = SubscriptionState.PAUSED
    purchase.subscription_status = get_subscription_status(purchase, now)
    return purchase
