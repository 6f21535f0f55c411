from __future__ import annotations

import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from wayfarer.config import Settings
from wayfarer.logging import get_logger, hash_email
from wayfarer.service import passwords, totp
from wayfarer.service.devices import DeviceFingerprint
from wayfarer.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    ChallengeInvalidError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    TooManyAttemptsError,
    UnauthorizedError,
    ValidationError,
)
from wayfarer.service.ledger import LoginAttemptLedger
from wayfarer.service.otp import OTPManager, OTPSender
from wayfarer.service.sessions import IssuedSession, SessionManager
from wayfarer.service.tokens import TokenMinter
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
from wayfarer.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If that email is registered, a password reset code has been sent"
GENERIC_RECOVERY_MESSAGE = "If that email is registered, an account recovery code has been sent"
_BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BACKUP_CODE_LENGTH = 8


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]: ...

    def set_verified(self, user_id: str) -> Optional[User]: ...

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        reset_lockout: bool = False,
    ) -> bool: ...

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> FailedLoginResult: ...

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool: ...

    def clear_lockout(self, user_id: str) -> bool: ...

    def record_successful_login(
        self,
        user_id: str,
        *,
        now: datetime,
        trusted_device: Optional[TrustedDevice] = None,
    ) -> Optional[User]: ...

    def add_trusted_device(self, user_id: str, device: TrustedDevice) -> bool: ...

    def set_two_factor(
        self,
        user_id: str,
        method: TwoFactorMethod,
        backup_codes: Iterable[str],
        *,
        totp_secret: Optional[str] = None,
    ) -> bool: ...

    def clear_two_factor(self, user_id: str) -> bool: ...

    def get_totp_secret(self, user_id: str) -> Optional[str]: ...

    def consume_backup_code(self, user_id: str, code: str) -> bool: ...

    def create_otp(self, challenge: OTPChallenge) -> OTPChallenge: ...

    def get_active_otp(
        self,
        purpose: OTPPurpose,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[OTPChallenge]: ...

    def verify_otp(
        self,
        purpose: OTPPurpose,
        code: str,
        *,
        max_attempts: int,
        now: datetime,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> tuple[OTPCheck, Optional[OTPChallenge]]: ...

    def mark_otp_verified(self, challenge_id: str) -> bool: ...

    def append_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def count_failed_attempts(self, email: str, ip: Optional[str], since: datetime) -> int: ...

    def latest_successful_attempt(
        self, email: str, since: datetime
    ) -> Optional[LoginAttempt]: ...

    def create_session(self, session: RefreshSession) -> RefreshSession: ...

    def get_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def get_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]: ...

    def touch_session(
        self, session_id: str, *, now: datetime, access_jti: Optional[str] = None
    ) -> bool: ...

    def deactivate_session(self, session_id: str) -> Optional[RefreshSession]: ...

    def deactivate_user_sessions(self, user_id: str) -> List[RefreshSession]: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]: ...

    def purge_expired(
        self, now: datetime, *, attempts_before: datetime, session_grace: timedelta = ...
    ) -> Dict[str, int]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    jti: str
    token_expires_at: datetime


class AuthService:
    """Login state machine plus the account-security operations around it.

    A login walks credential lookup, lock check, password check, two-factor
    check, suspicion check and session issue, stopping at the first check
    that fails. No mutable state is shared between requests; everything lives
    in the store, which owns the atomic counter and challenge updates.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        email: Optional[OTPSender] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.logger = logger
        self.hashing = passwords.PasswordHashing()
        self.minter = TokenMinter(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )
        self.otp = OTPManager(
            store,
            email,
            ttl_minutes=settings.otp_ttl_minutes,
            max_attempts=settings.otp_max_attempts,
        )
        self.ledger = LoginAttemptLedger(store)
        self.sessions = SessionManager(
            store,
            self.minter,
            cache,
            refresh_ttl_days=settings.refresh_token_ttl_days,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- helpers -----------------------------------------------------------

    def _require_strong_password(self, password: str) -> passwords.PasswordEvaluation:
        evaluation = passwords.evaluate(password)
        if not evaluation.is_valid:
            raise ValidationError(
                "Password does not meet security requirements",
                field_errors=evaluation.errors,
                detail={"strength": evaluation.strength},
            )
        return evaluation

    def _hash_password(self, password: str) -> str:
        digest, _algo = self.hashing.hash(password)
        return digest

    def _session_payload(
        self, user: User, issued: IssuedSession, message: str, **extra: Any
    ) -> Dict[str, Any]:
        return {
            "message": message,
            "access_token": issued.access_token.token,
            "refresh_token": issued.refresh_token,
            "token_type": "bearer",
            "expires_at": issued.access_token.expires_at,
            "session_id": issued.session.id,
            "user": user.public_profile(),
            **extra,
        }

    @staticmethod
    def _locked_error(lock_until: datetime, now: datetime) -> AccountLockedError:
        remaining = max(1, math.ceil((lock_until - now).total_seconds() / 60))
        return AccountLockedError(lock_until, remaining)

    def _register_failure(self, user: User, now: datetime) -> FailedLoginResult:
        try:
            return self.store.register_failed_login(
                user.id,
                max_attempts=self.settings.max_failed_logins,
                lock_until=now + timedelta(minutes=self.settings.lockout_minutes),
            )
        except Exception as exc:
            # An unpersisted increment must not read as a counted failure
            self.logger.error(
                "login_failure_persist_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("Unable to process login, please retry") from exc

    @staticmethod
    def _generate_backup_code() -> str:
        return "".join(
            secrets.choice(_BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_CODE_LENGTH)
        )

    def _load_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # -- registration and verification -------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        device: DeviceFingerprint,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        country: Optional[str] = None,
        city: Optional[str] = None,
    ) -> Dict[str, Any]:
        evaluation = self._require_strong_password(password)
        try:
            user = self.store.create_user(
                email,
                self._hash_password(password),
                name=name,
                phone=phone,
                country=country,
                city=city,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_duplicate_email", email_hash=hash_email(email))
            raise ConflictError(
                "User already exists with this email", detail=exc.detail
            ) from exc
        await self.otp.issue(user.id, user.email, OTPPurpose.EMAIL_VERIFICATION)
        issued = self.sessions.create_session(user.id, device)
        self.logger.info("user_registered", user_id=user.id)
        return self._session_payload(
            user,
            issued,
            "Account created successfully!",
            password_strength=evaluation.strength,
        )

    async def verify_email(
        self, email: str, code: str, device: DeviceFingerprint
    ) -> Dict[str, Any]:
        challenge = self.otp.verify(code, OTPPurpose.EMAIL_VERIFICATION, email=email)
        user = self.store.set_verified(challenge.user_id)
        if not user:
            raise ChallengeInvalidError()
        issued = self.sessions.create_session(user.id, device)
        self.logger.info("email_verified", user_id=user.id)
        return self._session_payload(user, issued, "Email verified successfully!")

    async def request_email_verification(self, user_id: str) -> Dict[str, Any]:
        user = self._load_user(user_id)
        if user.is_verified:
            raise ConflictError("Email is already verified")
        await self.otp.issue(user.id, user.email, OTPPurpose.EMAIL_VERIFICATION)
        return {"message": "Verification code sent to your email"}

    # -- login -------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        device: DeviceFingerprint,
        *,
        trust_device: bool = False,
    ) -> Dict[str, Any]:
        now = self._now()
        email = email.strip().lower()

        user = self.store.get_user_by_email(email)
        if not user:
            self.ledger.record(email, device.ip, LoginOutcome.INVALID_CREDENTIALS, device)
            self.logger.info("login_unknown_email", email_hash=hash_email(email))
            raise InvalidCredentialsError()

        state = user.security
        if state.lock_active(now):
            self.ledger.record(
                email, device.ip, LoginOutcome.ACCOUNT_LOCKED, device, user_id=user.id
            )
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise self._locked_error(state.lock_until, now)
        if state.lock_expired(now):
            self.store.clear_expired_lock(user.id, now)
            self.logger.info("login_lock_expired", user_id=user.id)

        if not user.is_active:
            self.ledger.record(
                email, device.ip, LoginOutcome.ACCOUNT_INACTIVE, device, user_id=user.id
            )
            self.logger.warning("login_rejected_inactive", user_id=user.id)
            raise AccountInactiveError()

        if not self.hashing.verify(user.password_hash, password):
            result = self._register_failure(user, now)
            if result.locked:
                self.ledger.record(
                    email, device.ip, LoginOutcome.ACCOUNT_LOCKED, device, user_id=user.id
                )
                self.logger.warning(
                    "login_account_locked",
                    user_id=user.id,
                    attempts=result.attempts,
                    newly_locked=result.newly_locked,
                )
                raise self._locked_error(result.lock_until or now, now)
            self.ledger.record(
                email, device.ip, LoginOutcome.INVALID_CREDENTIALS, device, user_id=user.id
            )
            attempts_left = max(0, self.settings.max_failed_logins - result.attempts)
            self.logger.info(
                "login_invalid_password", user_id=user.id, attempts_left=attempts_left
            )
            raise InvalidCredentialsError(attempts_left=attempts_left)

        if state.two_factor_enabled and not state.trusts(device.device_id):
            await self.otp.issue(user.id, user.email, OTPPurpose.TWO_FACTOR_LOGIN)
            self.ledger.record(
                email, device.ip, LoginOutcome.TWO_FACTOR_REQUIRED, device, user_id=user.id
            )
            self.logger.info("login_2fa_required", user_id=user.id)
            return {
                "requires_2fa": True,
                "user_id": user.id,
                "method": state.two_factor_method.value if state.two_factor_method else None,
                "message": "2FA code sent to your email",
            }

        if not trust_device and self.ledger.is_suspicious(
            email,
            device.ip,
            failure_threshold=self.settings.suspicious_failure_threshold,
            failure_window=timedelta(minutes=self.settings.suspicious_window_minutes),
            success_window=timedelta(days=self.settings.success_lookback_days),
        ):
            await self.otp.issue(user.id, user.email, OTPPurpose.TWO_FACTOR_LOGIN)
            self.ledger.record(
                email,
                device.ip,
                LoginOutcome.TWO_FACTOR_REQUIRED,
                device,
                user_id=user.id,
                suspicious=True,
            )
            self.logger.warning("login_suspicious", user_id=user.id)
            return {
                "requires_verification": True,
                "user_id": user.id,
                "message": "Unusual login activity detected. Verification code sent to your email",
            }

        return self._complete_login(user, device, trust_device, "Login successful")

    def _complete_login(
        self,
        user: User,
        device: DeviceFingerprint,
        trust_device: bool,
        message: str,
    ) -> Dict[str, Any]:
        now = self._now()
        trusted = (
            TrustedDevice(device.device_id, device.device_name, now) if trust_device else None
        )
        updated = self.store.record_successful_login(
            user.id, now=now, trusted_device=trusted
        )
        if not updated:
            raise InvalidCredentialsError()
        issued = self.sessions.create_session(user.id, device)
        self.ledger.record(user.email, device.ip, LoginOutcome.SUCCESS, device, user_id=user.id)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=issued.session.id,
            device_trusted=trust_device,
        )
        return self._session_payload(updated, issued, message)

    def _alternate_factor(self, user: User, code: str) -> bool:
        state = user.security
        if not state.two_factor_enabled:
            return False
        if state.two_factor_method == TwoFactorMethod.APP:
            secret = self.store.get_totp_secret(user.id)
            if secret and totp.verify(secret, code):
                return True
        candidate = code.strip().upper()
        if len(candidate) == _BACKUP_CODE_LENGTH and self.store.consume_backup_code(
            user.id, candidate
        ):
            self.logger.info("backup_code_used", user_id=user.id)
            return True
        return False

    async def verify_2fa(
        self,
        user_id: str,
        code: str,
        device: DeviceFingerprint,
        *,
        trust_device: bool = False,
    ) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        if not user:
            raise ChallengeInvalidError()
        if not user.is_active:
            raise AccountInactiveError()
        now = self._now()
        if user.security.lock_active(now):
            self.ledger.record(
                user.email, device.ip, LoginOutcome.ACCOUNT_LOCKED, device, user_id=user.id
            )
            self.logger.warning("2fa_rejected_locked", user_id=user.id)
            raise self._locked_error(user.security.lock_until, now)
        # Every factor needs the pending challenge so guesses spend its budget
        challenge = self.otp.active_challenge(user.id, OTPPurpose.TWO_FACTOR_LOGIN)
        if challenge is None:
            raise ChallengeInvalidError()
        if challenge.attempts >= self.otp.max_attempts:
            raise TooManyAttemptsError()
        if self._alternate_factor(user, code):
            self.otp.complete(challenge)
        else:
            self.otp.verify(code, OTPPurpose.TWO_FACTOR_LOGIN, user_id=user.id)
        return self._complete_login(user, device, trust_device, "Login successful")

    # -- tokens and sessions -----------------------------------------------

    async def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        session, access = self.sessions.renew(refresh_token)
        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            await self.sessions.revoke(refresh_token)
            raise UnauthorizedError(
                "Invalid or expired refresh token", error_code="invalid_or_expired"
            )
        return {
            "access_token": access.token,
            "token_type": "bearer",
            "expires_at": access.expires_at,
        }

    async def logout(
        self, refresh_token: Optional[str], access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        if refresh_token:
            await self.sessions.revoke(refresh_token)
        if access_token:
            payload = self.minter.decode_access_token(access_token)
            if payload and payload.get("jti"):
                await self.sessions.denylist_access_token(
                    payload["jti"],
                    datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
                )
        return {"message": "Logged out successfully"}

    async def logout_all(self, user_id: str) -> Dict[str, Any]:
        count = await self.sessions.revoke_all(user_id)
        return {"message": "Logged out from all devices", "sessions_revoked": count}

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        return self.sessions.list_active(user_id)

    async def revoke_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        await self.sessions.revoke_by_id(user_id, session_id)
        return {"message": "Session revoked successfully"}

    # -- passwords ---------------------------------------------------------

    async def request_password_reset(self, email: str) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if user:
            await self.otp.issue(user.id, user.email, OTPPurpose.PASSWORD_RESET)
            self.logger.info("password_reset_requested", user_id=user.id)
        else:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
        return {"message": GENERIC_RESET_MESSAGE}

    async def reset_password(
        self, email: str, code: str, new_password: str
    ) -> Dict[str, Any]:
        evaluation = self._require_strong_password(new_password)
        challenge = self.otp.verify(code, OTPPurpose.PASSWORD_RESET, email=email)
        if not self.store.set_password(
            challenge.user_id,
            self._hash_password(new_password),
            changed_at=self._now(),
            reset_lockout=True,
        ):
            raise ChallengeInvalidError()
        revoked = await self.sessions.revoke_all(challenge.user_id)
        self.logger.info(
            "password_reset_completed", user_id=challenge.user_id, sessions_revoked=revoked
        )
        return {
            "message": "Password reset successfully. Please log in with your new password.",
            "password_strength": evaluation.strength,
        }

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        user = self._load_user(user_id)
        if not self.hashing.verify(user.password_hash, current_password):
            self.logger.warning("password_change_wrong_current", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        evaluation = self._require_strong_password(new_password)
        self.store.set_password(
            user.id, self._hash_password(new_password), changed_at=self._now()
        )
        self.logger.info("password_changed", user_id=user.id)
        return {
            "message": "Password changed successfully",
            "password_strength": evaluation.strength,
        }

    # -- account recovery --------------------------------------------------

    async def request_account_recovery(self, email: str) -> Dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if user:
            await self.otp.issue(user.id, user.email, OTPPurpose.ACCOUNT_RECOVERY)
            self.logger.info("account_recovery_requested", user_id=user.id)
        else:
            self.logger.info("account_recovery_unknown_email", email_hash=hash_email(email))
        return {"message": GENERIC_RECOVERY_MESSAGE}

    async def recover_account(
        self, email: str, code: str, device: DeviceFingerprint
    ) -> Dict[str, Any]:
        challenge = self.otp.verify(code, OTPPurpose.ACCOUNT_RECOVERY, email=email)
        user = self.store.get_user(challenge.user_id)
        if not user:
            raise ChallengeInvalidError()
        if not user.is_active:
            raise AccountInactiveError()
        self.store.clear_lockout(user.id)
        self.logger.info("account_recovered", user_id=user.id)
        return self._complete_login(user, device, False, "Account recovered successfully")

    # -- two-factor management ---------------------------------------------

    async def enable_2fa(self, user_id: str, method: str = "email") -> Dict[str, Any]:
        try:
            chosen = TwoFactorMethod(method)
        except ValueError as exc:
            raise ValidationError(
                "Unsupported 2FA method", field_errors=["method must be 'email' or 'app'"]
            ) from exc
        user = self._load_user(user_id)
        if user.security.two_factor_enabled:
            raise ConflictError("2FA is already enabled")
        backup_codes = [
            self._generate_backup_code() for _ in range(self.settings.backup_code_count)
        ]
        secret = totp.generate_secret() if chosen is TwoFactorMethod.APP else None
        if not self.store.set_two_factor(
            user.id, chosen, backup_codes, totp_secret=secret
        ):
            raise ConflictError("2FA is already enabled")
        self.logger.info("2fa_enabled", user_id=user.id, method=chosen.value)
        result: Dict[str, Any] = {
            "message": "2FA enabled successfully",
            "method": chosen.value,
            "backup_codes": backup_codes,
        }
        if secret:
            result["totp_secret"] = secret
            result["provisioning_uri"] = totp.provisioning_uri(
                secret, user.email, issuer=self.settings.email_from_name
            )
        return result

    async def disable_2fa(self, user_id: str, password: str) -> Dict[str, Any]:
        user = self._load_user(user_id)
        if not self.hashing.verify(user.password_hash, password):
            self.logger.warning("2fa_disable_wrong_password", user_id=user.id)
            raise InvalidCredentialsError("Invalid password")
        self.store.clear_two_factor(user.id)
        self.logger.info("2fa_disabled", user_id=user.id)
        return {"message": "2FA disabled successfully"}

    # -- authenticated principal -------------------------------------------

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Not authorized, no token")
        payload = self.minter.decode_access_token(token)
        if not payload:
            raise UnauthorizedError("Not authorized, token failed")
        if await self.sessions.is_access_revoked(payload.get("jti")):
            raise UnauthorizedError("Not authorized, token revoked")
        user = self.store.get_user(payload["sub"])
        if not user:
            raise UnauthorizedError("Not authorized, user not found")
        if not user.is_active:
            raise AccountInactiveError()
        return AuthContext(
            user_id=user.id,
            role=Role(user.role).value,
            jti=payload.get("jti", ""),
            token_expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    # -- profile -----------------------------------------------------------

    def get_profile(self, user_id: str) -> Dict[str, Any]:
        return self._load_user(user_id).public_profile()

    def update_profile(self, user_id: str, **fields: Optional[str]) -> Dict[str, Any]:
        user = self.store.update_user_profile(user_id, **fields)
        if not user:
            raise NotFoundError("User not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(
            key for key, value in fields.items() if value is not None
        ))
        return user.public_profile()

    # -- maintenance -------------------------------------------------------

    def cleanup_expired(self) -> Dict[str, int]:
        now = self._now()
        purged = self.store.purge_expired(
            now,
            attempts_before=now - timedelta(days=self.settings.login_attempt_retention_days),
        )
        if any(purged.values()):
            self.logger.info("auth_cleanup_completed", **purged)
        return purged
