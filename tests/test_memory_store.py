"""Tests for the in-memory store's atomic operations."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from wayfarer.storage.cipher import MFASecretCipher
from wayfarer.storage.errors import ConstraintViolation
from wayfarer.storage.memory import MemoryStore
from wayfarer.storage.models import (
    LoginAttempt,
    LoginOutcome,
    OTPChallenge,
    OTPPurpose,
    RefreshSession,
    TrustedDevice,
    TwoFactorMethod,
)


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Store@Example.com", "hash")


def _lock_until():
    return datetime.now(timezone.utc) + timedelta(minutes=30)


class TestUsers:
    """Tests for user records."""

    def test_email_is_unique_case_insensitively(self, memory_store, user):
        """Duplicate emails raise ConstraintViolation."""
        assert user.email == "store@example.com"

        with pytest.raises(ConstraintViolation):
            memory_store.create_user("STORE@example.com", "hash")

    def test_returned_records_are_copies(self, memory_store, user):
        """Mutating a returned user does not change stored state."""
        fetched = memory_store.get_user(user.id)
        fetched.security.failed_login_attempts = 99

        assert memory_store.get_user(user.id).security.failed_login_attempts == 0

    def test_set_password_can_reset_lockout(self, memory_store, user):
        """reset_lockout clears the counter and lock."""
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())

        now = datetime.now(timezone.utc)
        memory_store.set_password(user.id, "new-hash", changed_at=now, reset_lockout=True)

        state = memory_store.get_user(user.id).security
        assert state.account_locked is False
        assert state.failed_login_attempts == 0
        assert state.password_changed_at == now


class TestLockout:
    """Tests for the atomic failure counter."""

    def test_counter_locks_at_threshold(self, memory_store, user):
        """The fifth failure locks and reports it as new."""
        results = [
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())
            for _ in range(5)
        ]

        assert [r.attempts for r in results] == [1, 2, 3, 4, 5]
        assert [r.locked for r in results] == [False, False, False, False, True]
        assert results[-1].newly_locked is True

    def test_lock_is_not_extended(self, memory_store, user):
        """Failures after the lock keep the original deadline."""
        first_deadline = _lock_until()
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=first_deadline)

        later = memory_store.register_failed_login(
            user.id, max_attempts=5, lock_until=first_deadline + timedelta(hours=1)
        )

        assert later.newly_locked is False
        assert later.lock_until == first_deadline

    def test_concurrent_failures_lock_exactly_once(self, memory_store, user):
        """Two simultaneous failures at four attempts lock the account once."""
        for _ in range(4):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())

        barrier = threading.Barrier(2)
        results = []
        results_lock = threading.Lock()

        def fail():
            barrier.wait()
            result = memory_store.register_failed_login(
                user.id, max_attempts=5, lock_until=_lock_until()
            )
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=fail) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(r.attempts for r in results) == [5, 6]
        assert all(r.locked for r in results)
        assert sum(r.newly_locked for r in results) == 1
        state = memory_store.get_user(user.id).security
        assert state.account_locked is True
        assert state.failed_login_attempts == 6

    def test_clear_expired_lock_only_when_expired(self, memory_store, user):
        """Active locks stay; expired ones are cleared."""
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())
        now = datetime.now(timezone.utc)

        assert memory_store.clear_expired_lock(user.id, now) is False
        assert memory_store.clear_expired_lock(user.id, now + timedelta(hours=1)) is True
        assert memory_store.get_user(user.id).security.failed_login_attempts == 0

    def test_successful_login_keeps_active_lock(self, memory_store, user):
        """Success zeroes the counter but an unexpired lock survives it."""
        deadline = _lock_until()
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=deadline)
        now = datetime.now(timezone.utc)

        updated = memory_store.record_successful_login(user.id, now=now)

        assert updated.security.failed_login_attempts == 0
        assert updated.security.account_locked is True
        assert updated.security.lock_until == deadline
        assert updated.security.lock_active(now)

    def test_successful_login_lifts_expired_lock(self, memory_store, user):
        """A lock past its deadline is cleared by the next success."""
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())

        updated = memory_store.record_successful_login(
            user.id, now=datetime.now(timezone.utc) + timedelta(hours=1)
        )

        assert updated.security.account_locked is False
        assert updated.security.lock_until is None

    def test_clear_lockout_lifts_active_lock(self, memory_store, user):
        """clear_lockout is the explicit unlock."""
        for _ in range(5):
            memory_store.register_failed_login(user.id, max_attempts=5, lock_until=_lock_until())

        assert memory_store.clear_lockout(user.id) is True
        state = memory_store.get_user(user.id).security
        assert state.account_locked is False
        assert state.failed_login_attempts == 0
        assert memory_store.clear_lockout("missing") is False

    def test_successful_login_upserts_trusted_device(self, memory_store, user):
        """Trusting the same device twice keeps one entry."""
        now = datetime.now(timezone.utc)
        device = TrustedDevice("device-1", "Chrome on Windows", now)

        memory_store.record_successful_login(user.id, now=now, trusted_device=device)
        updated = memory_store.record_successful_login(user.id, now=now, trusted_device=device)

        assert len(updated.security.trusted_devices) == 1
        assert updated.last_login == now


class TestTwoFactorStorage:
    """Tests for backup codes and encrypted secrets."""

    def test_totp_secret_encrypted_at_rest(self, memory_store, user):
        """The stored secret is ciphertext; reads decrypt it."""
        memory_store.set_two_factor(
            user.id, TwoFactorMethod.APP, ["ABCD1234"], totp_secret="JBSWY3DPEHPK3PXP"
        )

        assert memory_store.users[user.id].security.totp_secret != "JBSWY3DPEHPK3PXP"
        assert memory_store.get_totp_secret(user.id) == "JBSWY3DPEHPK3PXP"

    def test_enable_twice_is_refused(self, memory_store, user):
        """set_two_factor does not overwrite an enabled configuration."""
        assert memory_store.set_two_factor(user.id, TwoFactorMethod.EMAIL, ["A"]) is True
        assert memory_store.set_two_factor(user.id, TwoFactorMethod.APP, ["B"]) is False

    def test_backup_code_consumed_once(self, memory_store, user):
        """Each backup code works a single time."""
        memory_store.set_two_factor(user.id, TwoFactorMethod.EMAIL, ["ABCD1234", "WXYZ9876"])

        assert memory_store.consume_backup_code(user.id, "ABCD1234") is True
        assert memory_store.consume_backup_code(user.id, "ABCD1234") is False
        assert memory_store.get_user(user.id).security.backup_codes == ["WXYZ9876"]

    def test_cipher_rejects_foreign_ciphertext(self):
        """Ciphertext from another key decrypts to None."""
        token = MFASecretCipher("key-one").encrypt("secret")

        assert MFASecretCipher("key-two").decrypt(token) is None
        assert MFASecretCipher("key-one").decrypt(token) == "secret"


class TestMaintenance:
    """Tests for the expiry sweep."""

    def test_purge_expired(self, memory_store, user):
        """Expired challenges, long-dead sessions and old attempts are removed."""
        now = datetime.now(timezone.utc)
        expired = OTPChallenge.new(user.id, user.email, "123456", OTPPurpose.PASSWORD_RESET)
        expired.expires_at = now - timedelta(minutes=1)
        live = OTPChallenge.new(user.id, user.email, "654321", OTPPurpose.PASSWORD_RESET)
        memory_store.create_otp(expired)
        memory_store.create_otp(live)

        dead = RefreshSession.new(user.id, "hash-dead")
        dead.expires_at = now - timedelta(days=2)
        recent = RefreshSession.new(user.id, "hash-recent")
        recent.expires_at = now - timedelta(hours=1)
        memory_store.create_session(dead)
        memory_store.create_session(recent)

        old_attempt = LoginAttempt(user.email, "10.0.0.1", LoginOutcome.SUCCESS)
        old_attempt.created_at = now - timedelta(days=120)
        memory_store.append_login_attempt(old_attempt)
        memory_store.append_login_attempt(
            LoginAttempt(user.email, "10.0.0.1", LoginOutcome.SUCCESS)
        )

        purged = memory_store.purge_expired(now, attempts_before=now - timedelta(days=90))

        assert purged == {"otp_challenges": 1, "sessions": 1, "login_attempts": 1}
        assert set(memory_store.otp_challenges) == {live.id}
        assert memory_store.get_session_by_hash("hash-dead") is None
        assert memory_store.get_session_by_hash("hash-recent") is not None
        assert len(memory_store.login_attempts) == 1
