from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from wayfarer.logging import get_logger, hash_email
from wayfarer.service.devices import DeviceFingerprint
from wayfarer.storage.models import LoginAttempt, LoginOutcome

logger = get_logger(__name__)


class LoginAttemptLedger:
    """Append-only history of authentication attempts."""

    def __init__(self, store) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def record(
        self,
        email: str,
        ip: Optional[str],
        outcome: LoginOutcome,
        device: Optional[DeviceFingerprint] = None,
        *,
        user_id: Optional[str] = None,
        suspicious: bool = False,
    ) -> None:
        """Append an attempt; storage failures are logged and swallowed."""
        attempt = LoginAttempt(
            email=email.strip().lower(),
            ip=ip,
            outcome=LoginOutcome(outcome),
            browser=device.browser if device else None,
            os=device.os if device else None,
            device_name=device.device_name if device else None,
            user_agent=device.user_agent if device else None,
            location=device.location if device else None,
            user_id=user_id,
            suspicious=suspicious,
        )
        try:
            self.store.append_login_attempt(attempt)
        except Exception as exc:
            logger.error(
                "login_attempt_record_failed",
                email_hash=hash_email(email),
                outcome=attempt.outcome.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def count_recent_failures(
        self, email: str, ip: Optional[str], window: timedelta
    ) -> int:
        return self.store.count_failed_attempts(email, ip, self._now() - window)

    def most_recent_success(self, email: str, window: timedelta) -> Optional[LoginAttempt]:
        return self.store.latest_successful_attempt(email, self._now() - window)

    def is_suspicious(
        self,
        email: str,
        ip: Optional[str],
        *,
        failure_threshold: int = 3,
        failure_window: timedelta = timedelta(hours=1),
        success_window: timedelta = timedelta(days=30),
    ) -> bool:
        """Repeated recent failures from ``ip``, or a last good login elsewhere."""
        if self.count_recent_failures(email, ip, failure_window) >= failure_threshold:
            return True
        last_success = self.most_recent_success(email, success_window)
        return bool(last_success and last_success.ip != ip)
