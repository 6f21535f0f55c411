from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    SecurityState,
    TrustedDevice,
    TwoFactorMethod,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'visitor',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMPTZ,
        phone TEXT,
        country TEXT,
        city TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked BOOLEAN NOT NULL DEFAULT FALSE,
        lock_until TIMESTAMPTZ,
        trusted_devices JSONB NOT NULL DEFAULT '[]'::jsonb,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_method TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        totp_secret TEXT,
        password_changed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_challenge (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        purpose TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_challenge_user_purpose ON otp_challenge (user_id, purpose, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        ip TEXT,
        outcome TEXT NOT NULL,
        browser TEXT,
        os TEXT,
        device_name TEXT,
        user_agent TEXT,
        location TEXT,
        user_id UUID,
        suspicious BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_email_created ON login_attempt (email, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        device_id TEXT,
        device_name TEXT,
        browser TEXT,
        os TEXT,
        ip TEXT,
        location TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        access_jti TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user ON refresh_session (user_id, is_active)",
)

_PROFILE_FIELDS = ("name", "phone", "country", "city")
_FAILURE_OUTCOMES = [LoginOutcome.INVALID_CREDENTIALS.value, LoginOutcome.ACCOUNT_LOCKED.value]


class PostgresStore:
    """Postgres-backed credential, challenge, attempt and session store.

    Security-state mutations are single statements or row-locked transactions
    so concurrent requests never lose an increment.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = MFASecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        devices = row.get("trusted_devices") or []
        if isinstance(devices, str):
            devices = json.loads(devices)
        method = row.get("two_factor_method")
        security = SecurityState(
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            account_locked=bool(row.get("account_locked")),
            lock_until=row.get("lock_until"),
            trusted_devices=[
                TrustedDevice(
                    device_id=item["device_id"],
                    device_name=item.get("device_name", ""),
                    last_used_at=datetime.fromisoformat(item["last_used_at"]),
                )
                for item in devices
            ],
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_method=TwoFactorMethod(method) if method else None,
            backup_codes=list(row.get("backup_codes") or []),
            totp_secret=row.get("totp_secret"),
            password_changed_at=row.get("password_changed_at"),
        )
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            role=Role(row.get("role") or Role.VISITOR.value),
            is_verified=bool(row.get("is_verified")),
            is_active=bool(row.get("is_active", True)),
            last_login=row.get("last_login"),
            phone=row.get("phone"),
            country=row.get("country"),
            city=row.get("city"),
            created_at=row["created_at"],
            security=security,
        )

    @staticmethod
    def _row_to_challenge(row: Dict[str, Any]) -> OTPChallenge:
        return OTPChallenge(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            code=row["code"],
            purpose=OTPPurpose(row["purpose"]),
            expires_at=row["expires_at"],
            attempts=row.get("attempts") or 0,
            verified=bool(row.get("verified")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_attempt(row: Dict[str, Any]) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            email=row["email"],
            ip=row.get("ip"),
            outcome=LoginOutcome(row["outcome"]),
            browser=row.get("browser"),
            os=row.get("os"),
            device_name=row.get("device_name"),
            user_agent=row.get("user_agent"),
            location=row.get("location"),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            suspicious=bool(row.get("suspicious")),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> RefreshSession:
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            device_id=row.get("device_id"),
            device_name=row.get("device_name"),
            browser=row.get("browser"),
            os=row.get("os"),
            ip=row.get("ip"),
            location=row.get("location"),
            is_active=bool(row.get("is_active")),
            access_jti=row.get("access_jti"),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )

    @staticmethod
    def _devices_json(devices: Iterable[TrustedDevice]) -> str:
        return json.dumps(
            [
                {
                    "device_id": device.device_id,
                    "device_name": device.device_name,
                    "last_used_at": device.last_used_at.isoformat(),
                }
                for device in devices
            ]
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role, phone, country, city)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        self._normalize_email(email),
                        password_hash,
                        name,
                        Role(role).value,
                        phone,
                        country,
                        city,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (self._normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_profile(self, user_id: str, **fields: Optional[str]) -> Optional[User]:
        updates = {
            key: fields[key]
            for key in _PROFILE_FIELDS
            if key in fields and fields[key] is not None
        }
        if not updates:
            return self.get_user(user_id)
        assignments = ", ".join(f"{key} = %s" for key in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*updates.values(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        reset_lockout: bool = False,
    ) -> bool:
        lockout_sql = (
            ", failed_login_attempts = 0, account_locked = FALSE, lock_until = NULL"
            if reset_lockout
            else ""
        )
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET password_hash = %s, password_changed_at = %s{lockout_sql}
                WHERE id = %s
                RETURNING id
                """,
                (password_hash, changed_at, user_id),
            ).fetchone()
        return row is not None

    # -- lockout -----------------------------------------------------------

    def register_failed_login(
        self, user_id: str, *, max_attempts: int, lock_until: datetime
    ) -> FailedLoginResult:
        # SET expressions see the pre-update row, so the lock is only written
        # by the statement that crosses the threshold first
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    lock_until = CASE
                        WHEN failed_login_attempts + 1 >= %(max)s
                             AND NOT (account_locked AND lock_until IS NOT NULL)
                        THEN %(lock_until)s
                        ELSE lock_until
                    END,
                    account_locked = CASE
                        WHEN failed_login_attempts + 1 >= %(max)s THEN TRUE
                        ELSE account_locked
                    END
                WHERE id = %(user_id)s
                RETURNING failed_login_attempts, account_locked, lock_until
                """,
                {"max": max_attempts, "lock_until": lock_until, "user_id": user_id},
            ).fetchone()
        if not row:
            raise KeyError(user_id)
        attempts = row["failed_login_attempts"]
        locked = attempts >= max_attempts and bool(row["account_locked"])
        return FailedLoginResult(
            attempts=attempts,
            locked=locked,
            newly_locked=locked and row["lock_until"] == lock_until,
            lock_until=row["lock_until"] if locked else None,
        )

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, account_locked = FALSE, lock_until = NULL
                WHERE id = %s AND account_locked AND (lock_until IS NULL OR lock_until <= %s)
                RETURNING id
                """,
                (user_id, now),
            ).fetchone()
        return row is not None

    def clear_lockout(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0, account_locked = FALSE, lock_until = NULL
                WHERE id = %s
                RETURNING id
                """,
                (user_id,),
            ).fetchone()
        return row is not None

    def record_successful_login(
        self,
        user_id: str,
        *,
        now: datetime,
        trusted_device: Optional[TrustedDevice] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = 0,
                    account_locked = COALESCE(lock_until > %(now)s, FALSE) AND account_locked,
                    lock_until = CASE WHEN lock_until > %(now)s THEN lock_until END,
                    last_login = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {"now": now, "user_id": user_id},
            ).fetchone()
        if not row:
            return None
        if trusted_device:
            self.add_trusted_device(user_id, trusted_device)
            return self.get_user(user_id)
        return self._row_to_user(row)

    # -- trusted devices ---------------------------------------------------

    def add_trusted_device(self, user_id: str, device: TrustedDevice) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return False
            devices = [
                existing
                for existing in self._row_to_user(row).security.trusted_devices
                if existing.device_id != device.device_id
            ]
            devices.append(device)
            conn.execute(
                "UPDATE app_user SET trusted_devices = %s::jsonb WHERE id = %s",
                (self._devices_json(devices), user_id),
            )
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
        encrypted = self._mfa_cipher.encrypt(totp_secret) if totp_secret else None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_enabled = TRUE, two_factor_method = %s,
                    backup_codes = %s, totp_secret = %s
                WHERE id = %s AND NOT two_factor_enabled
                RETURNING id
                """,
                (TwoFactorMethod(method).value, list(backup_codes), encrypted, user_id),
            ).fetchone()
        return row is not None

    def clear_two_factor(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_enabled = FALSE, two_factor_method = NULL,
                    backup_codes = '{}', totp_secret = NULL
                WHERE id = %s
                RETURNING id
                """,
                (user_id,),
            ).fetchone()
        return row is not None

    def get_totp_secret(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT totp_secret FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._mfa_cipher.decrypt(row["totp_secret"]) if row else None

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE id = %s AND %s = ANY(backup_codes)
                RETURNING id
                """,
                (code, user_id, code),
            ).fetchone()
        return row is not None

    # -- one-time passcodes ------------------------------------------------

    def create_otp(self, challenge: OTPChallenge) -> OTPChallenge:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_challenge
                    (id, user_id, email, code, purpose, attempts, verified, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.user_id,
                    self._normalize_email(challenge.email),
                    challenge.code,
                    challenge.purpose.value,
                    challenge.attempts,
                    challenge.verified,
                    challenge.expires_at,
                    challenge.created_at,
                ),
            )
        return challenge

    def _active_otp_query(
        self,
        purpose: OTPPurpose,
        now: datetime,
        *,
        user_id: Optional[str],
        email: Optional[str],
        for_update: bool,
    ) -> tuple[str, list[Any]]:
        clauses = ["purpose = %s", "NOT verified", "expires_at > %s"]
        params: list[Any] = [OTPPurpose(purpose).value, now]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if email is not None:
            clauses.append("email = %s")
            params.append(self._normalize_email(email))
        sql = (
            "SELECT * FROM otp_challenge WHERE "
            + " AND ".join(clauses)
            + " ORDER BY created_at DESC LIMIT 1"
        )
        if for_update:
            sql += " FOR UPDATE"
        return sql, params

    def get_active_otp(
        self,
        purpose: OTPPurpose,
        now: datetime,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[OTPChallenge]:
        sql, params = self._active_otp_query(
            purpose, now, user_id=user_id, email=email, for_update=False
        )
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_challenge(row) if row else None

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
        sql, params = self._active_otp_query(
            purpose, now, user_id=user_id, email=email, for_update=True
        )
        # Row lock keeps the attempt increment and the verified write in one unit
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
            if not row:
                return OTPCheck.INVALID, None
            challenge = self._row_to_challenge(row)
            if challenge.attempts >= max_attempts:
                return OTPCheck.EXHAUSTED, challenge
            if challenge.code != code:
                conn.execute(
                    "UPDATE otp_challenge SET attempts = attempts + 1 WHERE id = %s",
                    (challenge.id,),
                )
                challenge.attempts += 1
                return OTPCheck.INVALID, challenge
            conn.execute(
                "UPDATE otp_challenge SET verified = TRUE WHERE id = %s", (challenge.id,)
            )
            challenge.verified = True
        return OTPCheck.VERIFIED, challenge

    def mark_otp_verified(self, challenge_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_challenge SET verified = TRUE
                WHERE id = %s AND NOT verified
                RETURNING id
                """,
                (challenge_id,),
            ).fetchone()
        return row is not None

    # -- login attempts ----------------------------------------------------

    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt
                    (id, email, ip, outcome, browser, os, device_name, user_agent,
                     location, user_id, suspicious, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    self._normalize_email(attempt.email),
                    attempt.ip,
                    LoginOutcome(attempt.outcome).value,
                    attempt.browser,
                    attempt.os,
                    attempt.device_name,
                    attempt.user_agent,
                    attempt.location,
                    attempt.user_id,
                    attempt.suspicious,
                    attempt.created_at,
                ),
            )

    def count_failed_attempts(self, email: str, ip: Optional[str], since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS failures FROM login_attempt
                WHERE email = %s AND ip IS NOT DISTINCT FROM %s
                  AND outcome = ANY(%s) AND created_at >= %s
                """,
                (self._normalize_email(email), ip, _FAILURE_OUTCOMES, since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def latest_successful_attempt(self, email: str, since: datetime) -> Optional[LoginAttempt]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM login_attempt
                WHERE email = %s AND outcome = %s AND created_at >= %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (self._normalize_email(email), LoginOutcome.SUCCESS.value, since),
            ).fetchone()
        return self._row_to_attempt(row) if row else None

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: RefreshSession) -> RefreshSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_session
                        (id, user_id, token_hash, device_id, device_name, browser, os, ip,
                         location, is_active, access_jti, created_at, last_used_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.device_id,
                        session.device_name,
                        session.browser,
                        session.os,
                        session.ip,
                        session.location,
                        session.is_active,
                        session.access_jti,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token_hash"})
        return session

    def get_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_hash(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(
        self, session_id: str, *, now: datetime, access_jti: Optional[str] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session
                SET last_used_at = %s, access_jti = COALESCE(%s, access_jti)
                WHERE id = %s AND is_active AND expires_at > %s
                RETURNING id
                """,
                (now, access_jti, session_id, now),
            ).fetchone()
        return row is not None

    def deactivate_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_session SET is_active = FALSE
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def deactivate_user_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_session SET is_active = FALSE
                WHERE user_id = %s AND is_active
                RETURNING *
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def list_active_sessions(self, user_id: str, now: datetime) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # -- maintenance -------------------------------------------------------

    def purge_expired(
        self,
        now: datetime,
        *,
        attempts_before: datetime,
        session_grace: timedelta = timedelta(days=1),
    ) -> Dict[str, int]:
        with self._connect() as conn:
            otps = conn.execute(
                "DELETE FROM otp_challenge WHERE expires_at <= %s", (now,)
            ).rowcount
            sessions = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at <= %s", (now - session_grace,)
            ).rowcount
            attempts = conn.execute(
                "DELETE FROM login_attempt WHERE created_at < %s", (attempts_before,)
            ).rowcount
        return {
            "otp_challenges": otps or 0,
            "sessions": sessions or 0,
            "login_attempts": attempts or 0,
        }
