"""Tests for access tokens, refresh secrets, device fingerprints and TOTP."""

import base64
import json
import time

from wayfarer.service import totp
from wayfarer.service.devices import DeviceFingerprint, extract_browser, extract_os
from wayfarer.service.tokens import TokenMinter, hash_secret, mint_refresh_secret

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def _minter(**overrides):
    kwargs = {"issuer": "wayfarer", "audience": "wayfarer-api", "access_ttl_minutes": 15}
    kwargs.update(overrides)
    return TokenMinter(SECRET, **kwargs)


def _b64(obj) -> str:
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


class TestAccessTokens:
    """Tests for HS256 access tokens."""

    def test_round_trip_claims(self):
        """A minted token decodes to its subject with the standard claims."""
        minter = _minter()
        access = minter.mint_access_token("user-1")

        payload = minter.decode_access_token(access.token)

        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"
        assert payload["jti"] == access.jti
        assert payload["iss"] == "wayfarer"
        assert payload["aud"] == "wayfarer-api"
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_tampered_signature_rejected(self):
        """Changing the payload invalidates the signature."""
        minter = _minter()
        header, _, signature = minter.mint_access_token("user-1").token.split(".")
        forged = _b64({"sub": "admin", "type": "access"})

        assert minter.decode_access_token(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self):
        """Tokens signed with another secret do not decode."""
        token = TokenMinter(
            "another-secret", issuer="wayfarer", audience="wayfarer-api"
        ).mint_access_token("user-1")

        assert _minter().decode_access_token(token.token) is None

    def test_wrong_audience_or_issuer_rejected(self):
        """Issuer and audience must both match."""
        token = _minter(audience="someone-else").mint_access_token("user-1").token
        assert _minter().decode_access_token(token) is None

        token = _minter(issuer="someone-else").mint_access_token("user-1").token
        assert _minter().decode_access_token(token) is None

    def test_none_algorithm_rejected(self):
        """Only HS256 headers are accepted."""
        minter = _minter()
        _, payload, signature = minter.mint_access_token("user-1").token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        assert minter.decode_access_token(f"{header}.{payload}.{signature}") is None

    def test_expired_token_rejected(self):
        """Tokens past expiry (beyond leeway) are rejected."""
        minter = _minter()
        now = int(time.time())
        token = minter._encode_jwt(
            {
                "sub": "user-1",
                "type": "access",
                "jti": "j",
                "iat": now - 3600,
                "exp": now - 120,
                "iss": "wayfarer",
                "aud": "wayfarer-api",
            }
        )

        assert minter.decode_access_token(token) is None
        assert _minter(leeway_seconds=300).decode_access_token(token) is not None

    def test_malformed_token(self):
        """Garbage input decodes to None."""
        assert _minter().decode_access_token("invalid.token.here") is None
        assert _minter().decode_access_token("no-dots") is None


class TestRefreshSecrets:
    """Tests for opaque refresh secrets."""

    def test_secret_is_long_and_random(self):
        """Secrets are 64 random bytes in hex."""
        first = mint_refresh_secret()
        second = mint_refresh_secret()

        assert len(first) == 128
        assert first != second

    def test_hash_is_deterministic(self):
        """The stored hash is a stable SHA-256 hex digest."""
        assert hash_secret("abc") == hash_secret("abc")
        assert hash_secret("abc") != "abc"
        assert len(hash_secret("abc")) == 64


class TestDeviceFingerprint:
    """Tests for device identification."""

    def test_browser_and_os_extraction(self):
        """First match wins for browsers and operating systems."""
        assert extract_browser("Mozilla/5.0 Firefox/121.0") == "Firefox"
        assert extract_browser("curl/8.0") == "Unknown Browser"
        assert extract_os("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)") == "macOS"
        assert extract_os("Mozilla/5.0 (X11; Linux x86_64)") == "Linux"
        assert extract_os("curl/8.0") == "Unknown OS"

    def test_mobile_os_not_reported_as_desktop(self):
        """Android and iOS agents are not mistaken for Linux and macOS."""
        android = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile"
        iphone = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Safari/604.1"
        ipad = "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) Version/17.0 Safari/604.1"

        assert extract_os(android) == "Android"
        assert extract_os(iphone) == "iOS"
        assert extract_os(ipad) == "iOS"

    def test_equality_uses_device_id_only(self):
        """Same agent and IP is the same device regardless of location."""
        ua = "Mozilla/5.0 (Windows NT 10.0) Chrome/120.0"
        first = DeviceFingerprint.from_request(ua, "10.0.0.1", location="Lisbon")
        second = DeviceFingerprint.from_request(ua, "10.0.0.1", location="Porto")

        assert first == second
        assert first.device_name == "Chrome on Windows"

    def test_ip_change_is_new_device(self):
        """A new IP produces a new device id."""
        ua = "Mozilla/5.0 (Windows NT 10.0) Chrome/120.0"

        assert (
            DeviceFingerprint.from_request(ua, "10.0.0.1").device_id
            != DeviceFingerprint.from_request(ua, "10.0.0.2").device_id
        )

    def test_missing_user_agent(self):
        """Requests without a user agent still fingerprint."""
        device = DeviceFingerprint.from_request(None, None)

        assert device.device_name == "Unknown Browser on Unknown OS"
        assert len(device.device_id) == 64


class TestTOTP:
    """Tests for authenticator codes."""

    def test_rfc6238_vector(self):
        """Matches the RFC 6238 SHA-1 test vector at T=59."""
        secret = base64.b32encode(b"12345678901234567890").decode()

        assert totp.generate(secret, 59, digits=8) == "94287082"

    def test_verify_accepts_adjacent_step(self):
        """Codes from the previous step are accepted for clock skew."""
        secret = totp.generate_secret()
        now = 1_700_000_000

        assert totp.verify(secret, totp.generate(secret, now - 30), now=now)
        assert not totp.verify(secret, totp.generate(secret, now - 90), now=now)

    def test_verify_rejects_non_digits(self):
        """Non-numeric input never verifies."""
        assert totp.verify(totp.generate_secret(), "ABCDEF") is False

    def test_provisioning_uri(self):
        """The URI carries the issuer, account and secret."""
        uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "a@example.com", issuer="Wayfarer")

        assert uri.startswith("otpauth://totp/Wayfarer%3Aa%40example.com?")
        assert "secret=JBSWY3DPEHPK3PXP" in uri
        assert "issuer=Wayfarer" in uri
