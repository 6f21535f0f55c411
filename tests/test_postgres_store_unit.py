import json
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from wayfarer.storage.cipher import MFASecretCipher
from wayfarer.storage.models import OTPCheck, OTPPurpose, Role, TwoFactorMethod
from wayfarer.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.row or []


class FakeConnection:
    def __init__(self, rows):
        self.rows = list(rows)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return FakeCursor(self.rows.pop(0) if self.rows else None)


class FakePool:
    def __init__(self, *rows):
        self.conn = FakeConnection(rows)

    def connection(self):
        return self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store._mfa_cipher = MFASecretCipher("unit-test-mfa-key")
    return store


def _user_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "pg@example.com",
        "password_hash": "hash",
        "name": "Pat",
        "role": "author",
        "is_verified": True,
        "is_active": True,
        "last_login": None,
        "phone": None,
        "country": "PT",
        "city": None,
        "created_at": now,
        "failed_login_attempts": 2,
        "account_locked": False,
        "lock_until": None,
        "trusted_devices": [
            {"device_id": "d1", "device_name": "Chrome on Windows", "last_used_at": now.isoformat()}
        ],
        "two_factor_enabled": True,
        "two_factor_method": "app",
        "backup_codes": ["ABCD1234"],
        "totp_secret": "ciphertext",
        "password_changed_at": None,
    }
    row.update(overrides)
    return row


def test_row_to_user_maps_security_state():
    row = _user_row()

    user = PostgresStore._row_to_user(row)

    assert user.id == str(row["id"])
    assert user.role == Role.AUTHOR
    assert user.security.failed_login_attempts == 2
    assert user.security.two_factor_method == TwoFactorMethod.APP
    assert user.security.trusts("d1")
    assert user.security.backup_codes == ["ABCD1234"]


def test_row_to_user_accepts_json_text_devices():
    devices = _user_row()["trusted_devices"]
    row = _user_row(trusted_devices=json.dumps(devices), two_factor_method=None, role=None)

    user = PostgresStore._row_to_user(row)

    assert user.security.trusted_devices[0].device_name == "Chrome on Windows"
    assert user.security.two_factor_method is None
    assert user.role == Role.VISITOR


def test_row_to_session_stringifies_ids():
    now = datetime.now(timezone.utc)
    session_id, user_id = uuid.uuid4(), uuid.uuid4()

    session = PostgresStore._row_to_session(
        {
            "id": session_id,
            "user_id": user_id,
            "token_hash": "h",
            "expires_at": now + timedelta(days=7),
            "is_active": True,
            "created_at": now,
            "last_used_at": now,
        }
    )

    assert session.id == str(session_id)
    assert session.user_id == str(user_id)
    assert session.is_valid(now)
    assert "token_hash" not in session.metadata()


def test_register_failed_login_reports_new_lock():
    lock_until = datetime.now(timezone.utc) + timedelta(minutes=30)
    pool = FakePool(
        {"failed_login_attempts": 5, "account_locked": True, "lock_until": lock_until}
    )
    store = _store(pool)

    result = store.register_failed_login("user-1", max_attempts=5, lock_until=lock_until)

    assert result.attempts == 5
    assert result.newly_locked is True
    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE app_user SET failed_login_attempts = failed_login_attempts + 1")
    assert params["max"] == 5


def test_register_failed_login_keeps_existing_deadline():
    first = datetime.now(timezone.utc) + timedelta(minutes=10)
    pool = FakePool({"failed_login_attempts": 6, "account_locked": True, "lock_until": first})
    store = _store(pool)

    result = store.register_failed_login(
        "user-1", max_attempts=5, lock_until=first + timedelta(minutes=30)
    )

    assert result.locked is True
    assert result.newly_locked is False
    assert result.lock_until == first


def test_record_successful_login_keeps_unexpired_lock():
    now = datetime.now(timezone.utc)
    deadline = now + timedelta(minutes=20)
    pool = FakePool(_user_row(failed_login_attempts=0, account_locked=True, lock_until=deadline))
    store = _store(pool)

    user = store.record_successful_login("user-1", now=now)

    assert user.security.lock_active(now)
    sql, params = pool.conn.statements[0]
    assert "failed_login_attempts = 0" in sql
    assert "account_locked = FALSE" not in sql
    assert "COALESCE(lock_until > %(now)s, FALSE) AND account_locked" in sql
    assert "CASE WHEN lock_until > %(now)s THEN lock_until END" in sql
    assert params == {"now": now, "user_id": "user-1"}


def test_register_failed_login_unknown_user():
    store = _store(FakePool(None))

    with pytest.raises(KeyError):
        store.register_failed_login(
            "missing", max_attempts=5, lock_until=datetime.now(timezone.utc)
        )


def test_verify_otp_increments_on_wrong_code():
    now = datetime.now(timezone.utc)
    challenge_row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "email": "pg@example.com",
        "code": "123456",
        "purpose": "password_reset",
        "expires_at": now + timedelta(minutes=10),
        "attempts": 1,
        "verified": False,
        "created_at": now,
    }
    pool = FakePool(challenge_row)
    store = _store(pool)

    check, challenge = store.verify_otp(
        OTPPurpose.PASSWORD_RESET, "000000", max_attempts=5, now=now, email="pg@example.com"
    )

    assert check == OTPCheck.INVALID
    assert challenge.attempts == 2
    assert "FOR UPDATE" in pool.conn.statements[0][0]
    assert pool.conn.statements[1][0].startswith("UPDATE otp_challenge SET attempts")


def test_totp_secret_decrypted_on_read():
    ciphertext = MFASecretCipher("unit-test-mfa-key").encrypt("JBSWY3DPEHPK3PXP")
    store = _store(FakePool({"totp_secret": ciphertext}))

    assert store.get_totp_secret("user-1") == "JBSWY3DPEHPK3PXP"


def test_unit_store_never_touches_database():
    store = _store(DummyPool())

    assert PostgresStore._normalize_email("  Mixed@Example.COM ") == "mixed@example.com"
    assert json.loads(PostgresStore._devices_json([])) == []
    with pytest.raises(AssertionError):
        store.get_user("user-1")
