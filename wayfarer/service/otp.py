from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timezone
from typing import Optional, Protocol, Set

from wayfarer.logging import get_logger
from wayfarer.service.errors import ChallengeInvalidError, TooManyAttemptsError
from wayfarer.storage.models import OTPChallenge, OTPCheck, OTPPurpose

logger = get_logger(__name__)


class OTPSender(Protocol):
    def send_otp(self, to_email: str, code: str, purpose: OTPPurpose) -> bool: ...


def generate_code() -> str:
    """Uniform six-digit code in [100000, 999999]."""
    return str(100000 + secrets.randbelow(900000))


class OTPManager:
    """Issues and verifies time-boxed one-time codes.

    Delivery is dispatched to a worker thread and never awaited by the caller;
    a failed send is logged and the challenge stays valid.
    """

    def __init__(
        self,
        store,
        sender: Optional[OTPSender] = None,
        *,
        ttl_minutes: int = 15,
        max_attempts: int = 5,
    ) -> None:
        self.store = store
        self.sender = sender
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self._deliveries: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(self, user_id: str, email: str, purpose: OTPPurpose) -> OTPChallenge:
        challenge = OTPChallenge.new(
            user_id,
            email.strip().lower(),
            generate_code(),
            OTPPurpose(purpose),
            ttl_minutes=self.ttl_minutes,
        )
        self.store.create_otp(challenge)
        logger.info(
            "otp_issued",
            user_id=user_id,
            purpose=challenge.purpose.value,
            challenge_id=challenge.id,
        )
        if self.sender is not None:
            task = asyncio.create_task(self._deliver(challenge))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)
        return challenge

    async def _deliver(self, challenge: OTPChallenge) -> None:
        try:
            sent = await asyncio.to_thread(
                self.sender.send_otp, challenge.email, challenge.code, challenge.purpose
            )
        except Exception as exc:
            logger.error(
                "otp_delivery_failed",
                challenge_id=challenge.id,
                purpose=challenge.purpose.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.warning(
                "otp_delivery_failed",
                challenge_id=challenge.id,
                purpose=challenge.purpose.value,
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used at shutdown."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    def verify(
        self,
        code: str,
        purpose: OTPPurpose,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> OTPChallenge:
        """Consume the active challenge for ``purpose`` if ``code`` matches.

        Every wrong guess counts against the challenge, whatever its purpose.
        Once the budget is spent the challenge only ever answers
        ``TooManyAttemptsError``, even for the right code.
        """
        if user_id is None and email is None:
            raise ValueError("verify needs a user_id or an email")
        outcome, challenge = self.store.verify_otp(
            OTPPurpose(purpose),
            code.strip(),
            max_attempts=self.max_attempts,
            now=self._now(),
            user_id=user_id,
            email=email.strip().lower() if email else None,
        )
        if outcome is OTPCheck.VERIFIED:
            logger.info(
                "otp_verified",
                user_id=challenge.user_id,
                purpose=challenge.purpose.value,
                challenge_id=challenge.id,
            )
            return challenge
        if outcome is OTPCheck.EXHAUSTED:
            logger.warning(
                "otp_attempts_exhausted",
                user_id=challenge.user_id,
                purpose=challenge.purpose.value,
                challenge_id=challenge.id,
            )
            raise TooManyAttemptsError()
        logger.warning(
            "otp_verification_failed",
            purpose=OTPPurpose(purpose).value,
            challenge_id=challenge.id if challenge else None,
            attempts=challenge.attempts if challenge else None,
        )
        raise ChallengeInvalidError()

    def active_challenge(self, user_id: str, purpose: OTPPurpose) -> Optional[OTPChallenge]:
        return self.store.get_active_otp(OTPPurpose(purpose), self._now(), user_id=user_id)

    def complete(self, challenge: OTPChallenge) -> None:
        """Close a challenge satisfied by another factor (authenticator or backup code)."""
        if not self.store.mark_otp_verified(challenge.id):
            raise ChallengeInvalidError()
        logger.info(
            "otp_completed_out_of_band",
            user_id=challenge.user_id,
            purpose=challenge.purpose.value,
            challenge_id=challenge.id,
        )
