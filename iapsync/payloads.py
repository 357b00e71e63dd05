from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def raw(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Apple verifyReceipt


class AppleTransaction(_Payload):
    quantity: str | None = None
    product_id: str | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    web_order_line_item_id: str | None = None
    purchase_date_ms: str | None = None
    original_purchase_date_ms: str | None = None
    expires_date: str | None = None
    expires_date_ms: str | None = None
    cancellation_date_ms: str | None = None
    cancellation_reason: str | None = None
    is_trial_period: str | None = None
    is_in_intro_offer_period: str | None = None
    subscription_group_identifier: str | None = None

    @property
    def purchase_time(self) -> int:
        return int(self.purchase_date_ms or 0)

    @property
    def is_subscription(self) -> bool:
        return bool(self.expires_date)


class ApplePendingRenewalInfo(_Payload):
    product_id: str | None = None
    original_transaction_id: str | None = None
    auto_renew_product_id: str | None = None
    auto_renew_status: str | None = None
    expiration_intent: str | None = None
    grace_period_expires_date_ms: str | None = None
    is_in_billing_retry_period: str | None = None


class AppleReceiptBody(_Payload):
    bundle_id: str | None = None
    receipt_creation_date_ms: str | None = None
    in_app: list[AppleTransaction] = Field(default_factory=list)


class AppleVerifyReceiptResponse(_Payload):
    status: int
    environment: str | None = None
    receipt: AppleReceiptBody | None = None
    latest_receipt: str | None = None
    latest_receipt_info: list[AppleTransaction] = Field(default_factory=list)
    pending_renewal_info: list[ApplePendingRenewalInfo] = Field(default_factory=list)


class AppleUnifiedReceipt(_Payload):
    latest_receipt: str | None = None


class AppleServerNotification(_Payload):
    notification_type: str | None = None
    password: str | None = None
    auto_renew_product_id: str | None = None
    unified_receipt: AppleUnifiedReceipt = Field(default_factory=AppleUnifiedReceipt)


# Google androidpublisher v3


class GoogleProductPurchase(_Payload):
    kind: Literal["androidpublisher#productPurchase"] = "androidpublisher#productPurchase"
    order_id: str | None = Field(default=None, alias="orderId")
    purchase_time_millis: str | None = Field(default=None, alias="purchaseTimeMillis")
    purchase_state: int | None = Field(default=None, alias="purchaseState")
    consumption_state: int | None = Field(default=None, alias="consumptionState")
    purchase_type: int | None = Field(default=None, alias="purchaseType")
    quantity: int | None = None
    region_code: str | None = Field(default=None, alias="regionCode")


class GoogleSubscriptionPurchase(_Payload):
    kind: Literal["androidpublisher#subscriptionPurchase"] = "androidpublisher#subscriptionPurchase"
    order_id: str | None = Field(default=None, alias="orderId")
    start_time_millis: str | None = Field(default=None, alias="startTimeMillis")
    expiry_time_millis: str | None = Field(default=None, alias="expiryTimeMillis")
    auto_renewing: bool = Field(default=False, alias="autoRenewing")
    price_currency_code: str | None = Field(default=None, alias="priceCurrencyCode")
    price_amount_micros: str | None = Field(default=None, alias="priceAmountMicros")
    payment_state: int | None = Field(default=None, alias="paymentState")
    cancel_reason: int | None = Field(default=None, alias="cancelReason")
    cancel_survey_result: dict[str, Any] | None = Field(default=None, alias="cancelSurveyResult")
    user_cancellation_time_millis: str | None = Field(
        default=None, alias="userCancellationTimeMillis"
    )
    linked_purchase_token: str | None = Field(default=None, alias="linkedPurchaseToken")
    purchase_type: int | None = Field(default=None, alias="purchaseType")


class GoogleVoidedPurchase(_Payload):
    kind: Literal["androidpublisher#voidedPurchase"] = "androidpublisher#voidedPurchase"
    order_id: str | None = Field(default=None, alias="orderId")
    purchase_token: str | None = Field(default=None, alias="purchaseToken")
    purchase_time_millis: str | None = Field(default=None, alias="purchaseTimeMillis")
    voided_time_millis: str | None = Field(default=None, alias="voidedTimeMillis")
    voided_source: int | None = Field(default=None, alias="voidedSource")
    voided_reason: int | None = Field(default=None, alias="voidedReason")


GooglePayload = Annotated[
    Union[GoogleProductPurchase, GoogleSubscriptionPurchase, GoogleVoidedPurchase],
    Field(discriminator="kind"),
]
google_payload_adapter: TypeAdapter[GooglePayload] = TypeAdapter(GooglePayload)


class GoogleSubscriptionNotification(_Payload):
    notification_type: int | None = Field(default=None, alias="notificationType")
    purchase_token: str = Field(alias="purchaseToken")
    subscription_id: str = Field(alias="subscriptionId")


class GoogleOneTimeProductNotification(_Payload):
    notification_type: int | None = Field(default=None, alias="notificationType")
    purchase_token: str = Field(alias="purchaseToken")
    sku: str


class GoogleVoidedPurchaseNotification(_Payload):
    purchase_token: str | None = Field(default=None, alias="purchaseToken")
    order_id: str = Field(alias="orderId")
    product_type: int | None = Field(default=None, alias="productType")
    refund_type: int | None = Field(default=None, alias="refundType")


class GoogleDeveloperNotification(_Payload):
    package_name: str | None = Field(default=None, alias="packageName")
    event_time_millis: str | None = Field(default=None, alias="eventTimeMillis")
    subscription_notification: GoogleSubscriptionNotification | None = Field(
        default=None, alias="subscriptionNotification"
    )
    one_time_product_notification: GoogleOneTimeProductNotification | None = Field(
        default=None, alias="oneTimeProductNotification"
    )
    voided_purchase_notification: GoogleVoidedPurchaseNotification | None = Field(
        default=None, alias="voidedPurchaseNotification"
    )
    test_notification: dict[str, Any] | None = Field(default=None, alias="testNotification")
