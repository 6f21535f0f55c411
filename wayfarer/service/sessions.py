from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError

from wayfarer.logging import get_logger
from wayfarer.service.devices import DeviceFingerprint
from wayfarer.service.errors import NotFoundError, UnauthorizedError
from wayfarer.service.tokens import AccessToken, TokenMinter, hash_secret
from wayfarer.storage.models import RefreshSession
from wayfarer.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session; the only place the raw refresh secret exists."""

    session: RefreshSession
    refresh_token: str
    access_token: AccessToken


def _invalid_refresh() -> UnauthorizedError:
    return UnauthorizedError(
        "Invalid or expired refresh token", error_code="invalid_or_expired"
    )


class SessionManager:
    """Refresh-token backed sessions keyed by the hash of their secret."""

    def __init__(
        self,
        store,
        minter: TokenMinter,
        cache: Optional[RedisCache] = None,
        *,
        refresh_ttl_days: int = 7,
    ) -> None:
        self.store = store
        self.minter = minter
        self.cache = cache
        self.refresh_ttl_days = refresh_ttl_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_session(self, user_id: str, device: DeviceFingerprint) -> IssuedSession:
        secret = self.minter.mint_refresh_secret()
        access = self.minter.mint_access_token(user_id)
        session = RefreshSession.new(
            user_id,
            hash_secret(secret),
            ttl_days=self.refresh_ttl_days,
            access_jti=access.jti,
            **device.session_fields(),
        )
        self.store.create_session(session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            device_name=session.device_name,
        )
        return IssuedSession(session=session, refresh_token=secret, access_token=access)

    def renew(self, refresh_token: str) -> tuple[RefreshSession, AccessToken]:
        """Mint a new access token; the refresh secret itself is not rotated."""
        now = self._now()
        session = self.store.get_session_by_hash(hash_secret(refresh_token))
        if not session or not session.is_valid(now):
            logger.warning(
                "session_renew_rejected",
                session_id=session.id if session else None,
                reason="inactive" if session and not session.is_active else "expired_or_unknown",
            )
            raise _invalid_refresh()
        access = self.minter.mint_access_token(session.user_id)
        if not self.store.touch_session(session.id, now=now, access_jti=access.jti):
            # Revoked between lookup and touch
            raise _invalid_refresh()
        session.last_used_at = now
        session.access_jti = access.jti
        return session, access

    async def revoke(self, refresh_token: str) -> bool:
        """Deactivate the session behind ``refresh_token``.

        Unknown and already-revoked tokens are a silent no-op so the caller
        learns nothing about which secrets exist.
        """
        session = self.store.get_session_by_hash(hash_secret(refresh_token))
        if not session:
            return False
        revoked = self.store.deactivate_session(session.id)
        if not revoked:
            return False
        await self._denylist(revoked)
        logger.info("session_revoked", user_id=revoked.user_id, session_id=revoked.id)
        return True

    async def revoke_all(self, user_id: str) -> int:
        revoked = self.store.deactivate_user_sessions(user_id)
        for session in revoked:
            await self._denylist(session)
        logger.info("sessions_revoked_all", user_id=user_id, count=len(revoked))
        return len(revoked)

    async def revoke_by_id(self, user_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if not session or session.user_id != user_id or not session.is_active:
            raise NotFoundError("Session not found")
        revoked = self.store.deactivate_session(session_id)
        if revoked:
            await self._denylist(revoked)
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    def list_active(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            session.metadata()
            for session in self.store.list_active_sessions(user_id, self._now())
        ]

    async def is_access_revoked(self, jti: Optional[str]) -> bool:
        if not self.cache or not jti:
            return False
        return await self.cache.is_access_token_denylisted(jti)

    async def denylist_access_token(self, jti: str, expires_at: datetime) -> None:
        if not self.cache:
            return
        try:
            await self.cache.denylist_access_token(jti, RedisCache.ttl_seconds(expires_at))
        except (RedisError, OSError) as exc:
            logger.warning("access_token_denylist_failed", jti=jti, error=str(exc))

    async def _denylist(self, session: RefreshSession) -> None:
        # The newest access token of a revoked session dies with it when Redis is present
        if not self.cache or not session.access_jti:
            return
        try:
            await self.cache.denylist_access_token(
                session.access_jti, self.minter.access_ttl_seconds
            )
        except (RedisError, OSError) as exc:
            logger.warning(
                "access_token_denylist_failed", session_id=session.id, error=str(exc)
            )
