from __future__ import annotations

import json
from typing import Any

import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import GoogleValidationError


ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"


def _error_reason(exc: HttpError) -> str | None:
    try:
        body = json.loads(exc.content.decode("utf-8"))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return None
    errors = (body.get("error") or {}).get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("reason")
    return None


def _to_validation_error(exc: HttpError) -> GoogleValidationError:
    status = getattr(exc.resp, "status", 500) or 500
    reason = _error_reason(exc)
    message = f"Google API rejected request ({status}"
    message += f", {reason})" if reason else ")"
    return GoogleValidationError(message, status_code=int(status), reason=reason)


class GooglePlayClient:
    """Thin wrapper over the androidpublisher v3 purchases API."""

    def __init__(
        self,
        service_account_info: dict[str, Any],
        package_name: str,
        timeout_seconds: int = 8,
        retries: int = 1,
    ) -> None:
        credentials = service_account.Credentials.from_service_account_info(
            service_account_info, scopes=[ANDROID_PUBLISHER_SCOPE]
        )
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout_seconds))
        self.service = build("androidpublisher", "v3", http=http, cache_discovery=False)
        self.package_name = package_name
        self.retries = retries

    def _execute(self, request: Any) -> dict[str, Any]:
        try:
            return request.execute(num_retries=self.retries)
        except HttpError as exc:
            raise _to_validation_error(exc) from exc
        except TimeoutError as exc:
            raise GoogleValidationError("Google API timeout", status_code=503) from exc

    def get_product_purchase(self, token: str, sku: str) -> dict[str, Any]:
        return self._execute(
            self.service.purchases()
            .products()
            .get(packageName=self.package_name, productId=sku, token=token)
        )

    def get_subscription_purchase(self, token: str, sku: str) -> dict[str, Any]:
        return self._execute(
            self.service.purchases()
            .subscriptions()
            .get(packageName=self.package_name, subscriptionId=sku, token=token)
        )

    def list_voided_purchases(self, start_time_ms: int | None = None) -> list[dict[str, Any]]:
        voided: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"packageName": self.package_name, "type": 1}
            if start_time_ms is not None:
                params["startTime"] = start_time_ms
            if page_token:
                params["token"] = page_token
            response = self._execute(self.service.purchases().voidedpurchases().list(**params))
            voided.extend(response.get("voidedPurchases") or [])
            page_token = (response.get("tokenPagination") or {}).get("nextPageToken")
            if not page_token:
                return voided
