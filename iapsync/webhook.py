from __future__ import annotations

import logging

import httpx

from .domain import PurchaseEvent, PurchaseEventType

logger = logging.getLogger("iapsync.webhook")


class WebhookSender:
    """Posts purchase events to the configured endpoint. Delivery failures are only logged."""

    def __init__(
        self,
        endpoint: str | None,
        auth_token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.auth_token = auth_token
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def send(self, event: PurchaseEvent | None) -> bool:
        if event is None or event.type == PurchaseEventType.NO_CHANGE:
            return False
        if not self.endpoint:
            logger.debug("No webhook endpoint configured, %s event dropped", event.type.value)
            return False

        headers = {"x-auth-token": self.auth_token} if self.auth_token else {}
        try:
            response = self.client.post(self.endpoint, json=event.to_json(), headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Webhook delivery of %s for order %s failed: %s",
                event.type.value,
                event.data.order_id,
                exc,
            )
            return False
        return True
