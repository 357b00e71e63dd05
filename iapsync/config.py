from __future__ import annotations

import base64
import binascii
import json
from functools import cached_property, lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_name: str = Field(default="iapsync", alias="APP_NAME")
    environment: str = Field(default="production", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(default="sqlite:///./iapsync.db", alias="DATABASE_URL")
    auto_create_tables: bool = Field(default=False, alias="AUTO_CREATE_TABLES")
    purchase_token_hash_pepper: str = Field(default="", alias="PURCHASE_TOKEN_HASH_PEPPER")
    store_incoming_notifications: bool = Field(default=True, alias="STORE_INCOMING_NOTIFICATIONS")

    apple_shared_secret: str = Field(default="", alias="APPLE_SHARED_SECRET")
    apple_timeout_seconds: float = Field(default=10.0, alias="APPLE_TIMEOUT_SECONDS")

    google_service_account_json: str | None = Field(default=None, alias="GOOGLE_SERVICE_ACCOUNT_JSON")
    android_package_name: str = Field(default="", alias="ANDROID_PACKAGE_NAME")
    google_timeout_seconds: int = Field(default=8, alias="GOOGLE_TIMEOUT_SECONDS")
    google_retries: int = Field(default=1, alias="GOOGLE_RETRIES")

    currency_api_base_url: str = Field(
        default="https://cdn.jsdelivr.net/gh/fawazahmed0/currency-api@1",
        alias="CURRENCY_API_BASE_URL",
    )
    currency_timeout_seconds: float = Field(default=5.0, alias="CURRENCY_TIMEOUT_SECONDS")

    webhook_outgoing_endpoint: str | None = Field(default=None, alias="WEBHOOK_OUTGOING_ENDPOINT")
    webhook_auth_token: str | None = Field(default=None, alias="WEBHOOK_AUTH_TOKEN")
    webhook_timeout_seconds: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_SECONDS")

    @cached_property
    def google_service_account_info(self) -> dict[str, Any]:
        if not self.google_service_account_json:
            raise RuntimeError("GOOGLE_SERVICE_ACCOUNT_JSON is not configured")
        value = self.google_service_account_json.strip()
        if value.startswith("{"):
            return json.loads(value)

        path = Path(value)
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))

        try:
            decoded = base64.b64decode(value).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise RuntimeError(
                "GOOGLE_SERVICE_ACCOUNT_JSON must be raw JSON, file path, or base64 JSON"
            ) from exc
        if decoded.strip().startswith("{"):
            return json.loads(decoded)

        raise RuntimeError(
            "GOOGLE_SERVICE_ACCOUNT_JSON must be raw JSON, file path, or base64 JSON"
        )

    @property
    def webhooks_enabled(self) -> bool:
        return bool(self.webhook_outgoing_endpoint)


@lru_cache
def get_settings() -> Settings:
    return Settings()
