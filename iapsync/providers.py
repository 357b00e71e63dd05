from __future__ import annotations

from .apple import AppleProvider
from .config import Settings
from .currency import CurrencyConverter
from .domain import Platform
from .errors import UnsupportedPlatformError
from .google import GoogleProvider
from .google_client import GooglePlayClient
from .provider import IAPProvider
from .repository import Database


def build_currency_converter(settings: Settings) -> CurrencyConverter:
    return CurrencyConverter(
        base_url=settings.currency_api_base_url,
        timeout_seconds=settings.currency_timeout_seconds,
    )


def build_google_client(settings: Settings) -> GooglePlayClient | None:
    if not settings.google_service_account_json:
        return None
    return GooglePlayClient(
        service_account_info=settings.google_service_account_info,
        package_name=settings.android_package_name,
        timeout_seconds=settings.google_timeout_seconds,
        retries=settings.google_retries,
    )


def get_provider(
    platform: str | Platform,
    settings: Settings,
    db: Database,
    converter: CurrencyConverter | None = None,
    google_client: GooglePlayClient | None = None,
) -> IAPProvider:
    """Build the provider for ``platform`` with its configuration passed in explicitly."""
    try:
        platform = Platform(platform)
    except ValueError as exc:
        raise UnsupportedPlatformError(str(platform)) from exc

    if platform == Platform.IOS:
        return AppleProvider(
            db,
            shared_secret=settings.apple_shared_secret,
            converter=converter,
            token_hash_pepper=settings.purchase_token_hash_pepper,
            timeout_seconds=settings.apple_timeout_seconds,
        )
    return GoogleProvider(
        db,
        client=google_client,
        package_name=settings.android_package_name,
        converter=converter,
        token_hash_pepper=settings.purchase_token_hash_pepper,
    )
