from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ValidateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    sku: str | None = None


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    sku: str | None = None
    # Import every purchase of the receipt, including those newer than the receipt itself.
    import_all: bool = Field(default=False, alias="import")
    user_id: str | None = Field(default=None, alias="userId", max_length=128)
    sync_user_id: bool = Field(default=False, alias="syncUserId")

    @field_validator("platform")
    @classmethod
    def normalize_platform(cls, value: str) -> str:
        return value.strip().lower()


class EventResponse(BaseModel):
    type: str
    data: dict[str, Any]


class NotificationResponse(BaseModel):
    ok: bool = True
    event: EventResponse | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str
