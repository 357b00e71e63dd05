from __future__ import annotations

import logging
from datetime import datetime

import httpx

from .domain import utcnow
from .errors import ConversionError

logger = logging.getLogger("iapsync.currency")


class CurrencyConverter:
    """Converts integer minor-unit prices using a daily exchange-rate table."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def rates_url(self, base_currency: str, date: datetime, now: datetime | None = None) -> str:
        day = date.date().isoformat()
        if day == (now or utcnow()).date().isoformat():
            # The table for today may not be published yet.
            day = "latest"
        return f"{self.base_url}/{day}/currencies/{base_currency.lower()}.json"

    def convert(
        self,
        price: int,
        base_currency: str,
        target_currency: str,
        date: datetime,
        now: datetime | None = None,
    ) -> int:
        base = base_currency.lower()
        target = target_currency.lower()
        if base == target:
            return price

        url = self.rates_url(base, date, now)
        try:
            response = self.client.get(url)
        except httpx.HTTPError as exc:
            raise ConversionError(f"Failed to get forex data: {exc}") from exc
        if response.status_code != 200:
            raise ConversionError(f"Failed to get forex data with status {response.status_code}")

        try:
            rates = response.json().get(base) or {}
        except ValueError as exc:
            raise ConversionError("Forex data is not valid JSON") from exc
        rate = rates.get(target)
        if not rate:
            raise ConversionError(f"Currency {target} not found in forex data")

        converted = int(price * rate)
        logger.debug("Converted %s %s to %s %s", price, base, converted, target)
        return converted
