from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from wayfarer.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_SECRET_BYTES = 64


@dataclass(frozen=True)
class AccessToken:
    token: str
    jti: str
    expires_at: datetime


def hash_secret(secret: str) -> str:
    """Deterministic SHA-256 digest used to store and look up refresh secrets."""
    return hashlib.sha256(secret.encode()).hexdigest()


def mint_refresh_secret() -> str:
    return secrets.token_hex(REFRESH_SECRET_BYTES)


class TokenMinter:
    """HS256 access tokens plus opaque refresh secrets."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        leeway_seconds: int = 0,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_minutes * 60
        self.leeway_seconds = leeway_seconds

    hash_secret = staticmethod(hash_secret)
    mint_refresh_secret = staticmethod(mint_refresh_secret)

    def mint_access_token(self, user_id: str) -> AccessToken:
        now = int(time.time())
        jti = str(uuid.uuid4())
        exp = now + self.access_ttl_seconds
        payload = {
            "sub": user_id,
            "type": ACCESS_TOKEN_TYPE,
            "jti": jti,
            "iat": now,
            "exp": exp,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return AccessToken(
            token=self._encode_jwt(payload),
            jti=jti,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("type") != ACCESS_TOKEN_TYPE:
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway_seconds:
            return None
        return payload
