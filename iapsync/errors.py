from __future__ import annotations


class IAPError(Exception):
    pass


class ProviderValidationError(IAPError):
    """The store rejected the token."""

    def __init__(self, message: str, code: int) -> None:
        super().__init__(message)
        self.code = code


APPLE_ERROR_MESSAGES: dict[int, str] = {
    21000: (
        "Error should not happen. Apple expects a correctly formatted HTTP POST "
        "which we perform on your behalf."
    ),
    21002: (
        "The receipt you sent may be malformed. The receipt may have been modified "
        "or this is a bad request sent by someone possibly malicious."
    ),
    21003: "Apple said the request was unauthorized. Perhaps you provided the wrong shared secret?",
    21004: (
        "Apple said the shared secret that you provided does not match the shared secret "
        "on file for your account."
    ),
    21005: "Sorry! Apple's service seems to be down. Try the request again later.",
    21008: "Apple's documentation says this response code is no longer being used. Should not happen.",
    21009: "Sorry! Apple's service seems to be down. Try the request again later.",
    21010: "Apple could not find the customer. The customer could have been deleted?",
}


class AppleValidationError(ProviderValidationError):
    def __init__(self, code: int) -> None:
        explanation = APPLE_ERROR_MESSAGES.get(code, "Apple rejected the receipt.")
        super().__init__(f"{explanation} (error code: {code})", code)
        self.explanation = explanation


class GoogleValidationError(ProviderValidationError):
    def __init__(self, message: str, status_code: int, reason: str | None = None) -> None:
        super().__init__(message, status_code)
        self.status_code = status_code
        self.reason = reason

    @property
    def is_invalid(self) -> bool:
        return self.status_code == 400 and self.reason == "invalid"


class ConversionError(IAPError):
    pass


class UnsupportedPlatformError(IAPError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"Platform {platform!r} is not supported")
        self.platform = platform


class NotificationAuthError(IAPError):
    pass


class EmptyReceiptError(IAPError):
    pass
