from __future__ import annotations

from .domain import Purchase, PurchaseEventType, SubscriptionStatus


def get_purchase_event_type(previous: Purchase | None, current: Purchase) -> PurchaseEventType:
    """Classify the change between the stored chain head and the reconciled purchase.

    ``previous`` is the latest purchase of the chain as it was stored before the receipt was
    reconciled, or ``None`` when the chain was unknown.
    """
    if (
        not current.is_subscription
        or previous is None
        or previous.original_order_id != current.original_order_id
        or (
            previous.subscription_status == SubscriptionStatus.EXPIRED
            and current.subscription_status == SubscriptionStatus.ACTIVE
        )
    ):
        return PurchaseEventType.PURCHASE

    if not previous.is_refunded and current.is_refunded:
        return PurchaseEventType.REFUND

    if previous.product_sku != current.product_sku:
        return PurchaseEventType.SUBSCRIPTION_REPLACE

    if previous.subscription_status != current.subscription_status:
        status = current.subscription_status
        if status == SubscriptionStatus.RETRY_PERIOD:
            return PurchaseEventType.SUBSCRIPTION_RENEWAL_RETRY
        if status == SubscriptionStatus.CANCELLED:
            return PurchaseEventType.SUBSCRIPTION_CANCEL
        if status == SubscriptionStatus.EXPIRED:
            if previous.is_subscription_grace_period:
                return PurchaseEventType.SUBSCRIPTION_GRACE_PERIOD_EXPIRE
            return PurchaseEventType.SUBSCRIPTION_EXPIRE
        if (
            previous.subscription_status == SubscriptionStatus.CANCELLED
            and status == SubscriptionStatus.ACTIVE
        ):
            return PurchaseEventType.SUBSCRIPTION_UNCANCEL
        if (
            not previous.subscription_renewal_product_sku
            and current.subscription_renewal_product_sku
            and current.product_sku != current.subscription_renewal_product_sku
        ):
            return PurchaseEventType.SUBSCRIPTION_PRODUCT_CHANGE
        return PurchaseEventType.NO_CHANGE

    if previous.order_id != current.order_id:
        return PurchaseEventType.SUBSCRIPTION_RENEWAL

    return PurchaseEventType.NO_CHANGE
