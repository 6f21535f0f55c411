from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from wayfarer.logging import get_logger
from wayfarer.storage.cipher import MFASecretCipher
from wayfarer.storage.errors import ConstraintViolation
from wayfarer.storage.models import (
    FailedLoginResult,
    LoginAttempt,
    LoginOutcome,
    OTPChallenge,
    OTPCheck,
    OTPPurpose,
    RefreshSession,
    Role,
    TrustedDevice,
    TwoFactorMethod,
    User,
)

_PROFILE_FIELDS = ("name", "phone", "country", "city")
FAILURE_OUTCOMES = frozenset(
    {LoginOutcome.INVALID_CREDENTIALS, LoginOutcome.ACCOUNT_LOCKED}
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every compound read-modify-write runs under one re-entrant lock, which is
    what makes the lockout counter, OTP verification and backup-code
    consumption atomic. Records are copied on the way in and out so callers
    cannot mutate stored state behind the store's back.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self.otp_challenges: Dict[str, OTPChallenge] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.sessions: Dict[str, RefreshSession] = {}
        self._session_hash_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self._mfa_cipher = MFASecretCipher(mfa_encryption_key)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: Role = Role.VISITOR,
        phone: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> User:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=role,
                phone=phone,
                country=country,
                city=city,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(self._normalize_email(email))
            if not user_id:
                return None
            return copy.deepcopy(self.users.get(user_id))

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key in _PROFILE_FIELDS:
                if key in fields and fields[key] is not None:
                    setattr(user, key, fields[key])
            return copy.deepcopy(user)

    def set_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            return copy.deepcopy(user)

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        reset_lockout: bool = False,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.security.password_changed_at = changed_at
            if reset_lockout:
                self._reset_lockout(user)
            return True

    # -- lockout -----------------------------------------------------------

    @staticmethod
    def _reset_lockout(user: User) -> None:
        user.security.failed_login_attempts = 0
        user.security.account_locked = False
        user.security.lock_until = None

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> FailedLoginResult:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise KeyError(user_id)
            state = user.security
            state.failed_login_attempts += 1
            if state.failed_login_attempts < max_attempts:
                return FailedLoginResult(
                    attempts=state.failed_login_attempts, locked=False, newly_locked=False
                )
            # Lock exactly once; a concurrent loser keeps the winner's deadline
            if state.account_locked and state.lock_until:
                return FailedLoginResult(
                    attempts=state.failed_login_attempts,
                    locked=True,
                    newly_locked=False,
                    lock_until=state.lock_until,
                )
            state.account_locked = True
            state.lock_until = lock_until
            return FailedLoginResult(
                attempts=state.failed_login_attempts,
                locked=True,
                newly_locked=True,
                lock_until=lock_until,
            )

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.security.lock_expired(now):
                return False
            self._reset_lockout(user)
            return True

    def clear_lockout(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self._reset_lockout(user)
            return True

    def record_successful_login(
        self,
        user_id: str,
        *,
        now: datetime,
        trusted_device: Optional[TrustedDevice] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            # Success zeroes the counter; only an expired lock is lifted here
            user.security.failed_login_attempts = 0
            if user.security.lock_expired(now):
                self._reset_lockout(user)
            user.last_login = now
            if trusted_device:
                self._upsert_trusted_device(user, trusted_device)
            return copy.deepcopy(user)

    # -- trusted devices ---------------------------------------------------

    @staticmethod
    def _upsert_trusted_device(user: User, device: TrustedDevice) -> None:
        for existing in user.security.trusted_devices:
            if existing.device_id == device.device_id:
                existing.device_name = device.device_name
                existing.last_used_at = device.last_used_at
                return
        user.security.trusted_devices.append(copy.copy(device))

    def add_trusted_device(self, user_id: str, device: TrustedDevice) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self._upsert_trusted_device(user, device)
            return True

    # -- two-factor --------------------------------------------------------

    def set_two_factor(
        self,
        user_id: str,
        method: TwoFactorMethod,
        backup_codes: Iterable[str],
        *,
        totp_secret: Optional[str] = None,
    ) -> bool:
        """Enable two-factor unless it is already on; returns whether it changed."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.security.two_factor_enabled:
                return False
            state = user.security
            state.two_factor_enabled = True
            state.two_factor_method = method
            state.backup_codes = list(backup_codes)
            state.totp_secret = (
                self._mfa_cipher.encrypt(totp_secret) if totp_secret else None
            )
            return True

    def clear_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            state = user.security
            state.two_factor_enabled = False
            state.two_factor_method = None
            state.backup_codes = []
            state.totp_secret = None
            return True

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            ciphertext = user.security.totp_secret if user else None
        return self._mfa_cipher.decrypt(ciphertext)

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code not in user.security.backup_codes:
                return False
            user.security.backup_codes.remove(code)
            return True

    # -- one-time passcodes ------------------------------------------------

    def create_otp(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._data_lock:
            self.otp_challenges[challenge.id] = copy.deepcopy(challenge)
            return copy.deepcopy(challenge)

    def _find_active_otp(
        self,
        purpose: OTPPurpose,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[OTPChallenge]:
        normalized = self._normalize_email(email) if email else None
        candidates = [
            challenge
            for challenge in self.otp_challenges.values()
            if challenge.purpose == purpose
            and challenge.is_open(now)
            and (user_id is None or challenge.user_id == user_id)
            and (normalized is None or challenge.email == normalized)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda challenge: challenge.created_at)

    def get_active_otp(
        self,
        purpose: OTPPurpose,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[OTPChallenge]:
        with self._data_lock:
            challenge = self._find_active_otp(purpose, now, user_id=user_id, email=email)
            return copy.deepcopy(challenge) if challenge else None

    def verify_otp(
        self,
        purpose: OTPPurpose,
        code: str,
        *,
        max_attempts: int,
        now: datetime,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> tuple[OTPCheck, Optional[OTPChallenge]]:
        with self._data_lock:
            challenge = self._find_active_otp(purpose, now, user_id=user_id, email=email)
            if not challenge:
                return OTPCheck.INVALID, None
            if challenge.attempts >= max_attempts:
                return OTPCheck.EXHAUSTED, copy.deepcopy(challenge)
            if challenge.code != code:
                challenge.attempts += 1
                return OTPCheck.INVALID, copy.deepcopy(challenge)
            challenge.verified = True
            return OTPCheck.VERIFIED, copy.deepcopy(challenge)

    def mark_otp_verified(self, challenge_id: str) -> bool:
        with self._data_lock:
            challenge = self.otp_challenges.get(challenge_id)
            if not challenge or challenge.verified:
                return False
            challenge.verified = True
            return True

    # -- login attempts ----------------------------------------------------

    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            stored = copy.deepcopy(attempt)
            stored.email = self._normalize_email(stored.email)
            self.login_attempts.append(stored)

    def count_failed_attempts(self, email: str, ip: Optional[str], since: datetime) -> int:
        normalized = self._normalize_email(email)
        with self._data_lock:
            return sum(
                1
                for attempt in self.login_attempts
                if attempt.email == normalized
                and attempt.ip == ip
                and attempt.outcome in FAILURE_OUTCOMES
                and attempt.created_at >= since
            )

    def latest_successful_attempt(self, email: str, since: datetime) -> Optional[LoginAttempt]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            matches = [
                attempt
                for attempt in self.login_attempts
                if attempt.email == normalized
                and attempt.outcome == LoginOutcome.SUCCESS
                and attempt.created_at >= since
            ]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda attempt: attempt.created_at))

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: RefreshSession) -> RefreshSession:
        with self._data_lock:
            if session.token_hash in self._session_hash_index:
                raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
            self.sessions[session.id] = copy.deepcopy(session)
            self._session_hash_index[session.token_hash] = session.id
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def get_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session_id = self._session_hash_index.get(token_hash)
            session = self.sessions.get(session_id) if session_id else None
            return copy.deepcopy(session) if session else None

    def touch_session(
        self, session_id: str, *, now: datetime, access_jti: Optional[str] = None
    ) -> bool:
        """Bump ``last_used_at`` on a still-valid session."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_valid(now):
                return False
            session.last_used_at = now
            if access_jti:
                session.access_jti = access_jti
            return True

    def deactivate_session(self, session_id: str) -> Optional[RefreshSession]:
        """Deactivate a session; returns it only if this call flipped it."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or not session.is_active:
                return None
            session.is_active = False
            return copy.deepcopy(session)

    def deactivate_user_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._data_lock:
            revoked = []
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_active:
                    session.is_active = False
                    revoked.append(copy.deepcopy(session))
            return revoked

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._data_lock:
            active = [
                copy.deepcopy(session)
                for session in self.sessions.values()
                if session.user_id == user_id and session.is_valid(now)
            ]
        active.sort(key=lambda session: session.last_used_at, reverse=True)
        return active

    # -- maintenance -------------------------------------------------------

    def purge_expired(
        self,
        now: datetime,
        *,
        attempts_before: datetime,
        session_grace: timedelta = timedelta(days=1),
    ) -> Dict[str, int]:
        with self._data_lock:
            expired_otps = [
                challenge_id
                for challenge_id, challenge in self.otp_challenges.items()
                if challenge.expires_at <= now
            ]
            for challenge_id in expired_otps:
                del self.otp_challenges[challenge_id]

            expired_sessions = [
                session
                for session in self.sessions.values()
                if session.expires_at + session_grace <= now
            ]
            for session in expired_sessions:
                del self.sessions[session.id]
                self._session_hash_index.pop(session.token_hash, None)

            kept = [a for a in self.login_attempts if a.created_at >= attempts_before]
            purged_attempts = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
        return {
            "otp_challenges": len(expired_otps),
            "sessions": len(expired_sessions),
            "login_attempts": purged_attempts,
        }
