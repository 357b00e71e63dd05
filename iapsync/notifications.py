from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from pydantic import ValidationError

from .errors import NotificationAuthError
from .payloads import GoogleDeveloperNotification


def decode_pubsub_envelope(envelope: dict[str, Any]) -> GoogleDeveloperNotification:
    """Unwrap a Pub/Sub push body into the Play developer notification it carries."""
    message = envelope.get("message") if isinstance(envelope, dict) else None
    if not isinstance(message, dict) or not message.get("data"):
        raise NotificationAuthError("Pub/Sub envelope has no message data")
    try:
        decoded = base64.b64decode(message["data"]).decode("utf-8")
        return GoogleDeveloperNotification.model_validate(json.loads(decoded))
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError) as exc:
        raise NotificationAuthError("Pub/Sub message data is not a developer notification") from exc

