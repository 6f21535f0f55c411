from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from wayfarer.logging import get_logger

logger = get_logger(__name__)


class MFASecretCipher:
    """Fernet wrapper for authenticator secrets kept at rest."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError(
                "MFA cipher needs key material; set MFA_SECRET_KEY or JWT_SECRET"
            )
        self._fernet = Fernet(self._derive_key(material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None
