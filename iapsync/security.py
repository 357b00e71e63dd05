from __future__ import annotations

import hashlib
import hmac


def hash_purchase_token(token: str, pepper: str = "") -> str:
    if not pepper:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
    return hmac.new(pepper.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def secrets_match(presented: str | None, configured: str | None) -> bool:
    if not presented or not configured:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), configured.encode("utf-8"))
