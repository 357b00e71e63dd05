"""
Webhook Sender Tests
====================

Outgoing event delivery: payload shape, filtering and failure handling.
"""

import json

import httpx

from conftest import NOW
from iapsync.domain import Platform, Purchase, PurchaseEvent, PurchaseEventType, SubscriptionStatus
from iapsync.webhook import WebhookSender

ENDPOINT = "https://hooks.example.com/iap"


def _event(event_type: PurchaseEventType = PurchaseEventType.PURCHASE) -> PurchaseEvent:
    purchase = Purchase(
        order_id="w1",
        platform=Platform.IOS,
        product_sku="com.example.monthly",
        purchase_date=NOW,
        receipt_date=NOW,
        is_subscription=True,
        subscription_status=SubscriptionStatus.ACTIVE,
    )
    return PurchaseEvent(type=event_type, data=purchase)


def _sender(status_code: int = 200, auth_token: str | None = "hook-token"):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WebhookSender(ENDPOINT, auth_token=auth_token, client=client), requests


def test_posts_camel_case_event_with_token():
    sender, requests = _sender()

    assert sender.send(_event()) is True

    [request] = requests
    assert str(request.url) == ENDPOINT
    assert request.headers["x-auth-token"] == "hook-token"
    body = json.loads(request.content)
    assert body["type"] == "purchase"
    assert body["data"]["orderId"] == "w1"
    assert body["data"]["platform"] == "ios"
    assert body["data"]["subscriptionStatus"] == "active"
    assert body["data"]["purchaseDate"] == NOW.isoformat()


def test_no_change_is_not_sent():
    sender, requests = _sender()
    assert sender.send(_event(PurchaseEventType.NO_CHANGE)) is False
    assert sender.send(None) is False
    assert requests == []


def test_without_token_header():
    sender, requests = _sender(auth_token=None)
    sender.send(_event())
    assert "x-auth-token" not in requests[0].headers


def test_failure_is_swallowed_and_logged(caplog):
    sender, requests = _sender(status_code=502)

    assert sender.send(_event()) is False

    assert len(requests) == 1
    assert "Webhook delivery of purchase for order w1 failed" in caplog.text


def test_unconfigured_endpoint():
    assert WebhookSender(None).send(_event()) is False
