from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

INTERVAL = 30
DIGITS = 6


def generate_secret() -> str:
    """Random 160-bit base32 secret for authenticator apps."""
    return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")


def generate(secret: str, timestamp: float, *, interval: int = INTERVAL, digits: int = DIGITS) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify(
    secret: str,
    code: str,
    *,
    window: int = 1,
    interval: int = INTERVAL,
    now: Optional[float] = None,
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    if not code or not code.isdigit():
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate(secret, current + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account: str, *, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode(
        {"secret": secret, "issuer": issuer, "digits": DIGITS, "period": INTERVAL}
    )
    return f"otpauth://totp/{label}?{query}"
