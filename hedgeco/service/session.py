from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from hedgeco.logging import get_logger
from hedgeco.service.errors import (
    AuthenticationError,
    ForbiddenError,
    LedgerUnavailableError,
    SessionEndedError,
)
from hedgeco.service.ledger import (
    AlreadyExpired,
    NotFound,
    ReuseDetected,
    TokenLedger,
)
from hedgeco.service.tokens import (
    IssuedToken,
    TokenClaims,
    TokenCodec,
    TokenExpired,
    TokenInvalid,
)
from hedgeco.storage.cache import CacheLayer
from hedgeco.storage.errors import STORAGE_FAILURES
from hedgeco.storage.models import User

logger = get_logger(__name__)


def family_revoked_key(family: str) -> str:
    return f"auth:family:revoked:{family}"


def user_cutoff_key(user_id: str) -> str:
    return f"auth:user:revoked_before:{user_id}"


def _epoch_ms(seconds: float) -> int:
    return round(seconds * 1000)


@dataclass(frozen=True)
class SessionTokens:
    user_id: str
    family: str
    access: IssuedToken
    refresh: IssuedToken
    role: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    family: str
    role: Optional[str]
    jti: str


@dataclass(frozen=True)
class LogoutResult:
    revoked: int
    family: Optional[str] = None


class SessionService:
    """Login, refresh, logout and access-token authentication.

    Refresh failures all surface as :class:`SessionEndedError` with one
    public message; the distinguishing ``reason`` only reaches the logs.
    """

    def __init__(
        self,
        codec: TokenCodec,
        ledger: TokenLedger,
        cache: CacheLayer,
        users: Any,
        *,
        reuse_revokes_all_sessions: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.ledger = ledger
        self.cache = cache
        self.users = users
        self.reuse_revokes_all_sessions = reuse_revokes_all_sessions
        self._clock = clock

    @property
    def _denylist_ttl(self) -> int:
        # Outstanding access tokens are dead once this much time has passed
        return max(1, int(self.codec.access_ttl.total_seconds()))

    async def _load_user(self, user_id: str) -> Optional[User]:
        try:
            return await asyncio.to_thread(self.users.get_user, user_id)
        except STORAGE_FAILURES as exc:
            raise LedgerUnavailableError("user directory unavailable") from exc

    def _mint(self, user: User, family: str, refresh_id: str) -> SessionTokens:
        access = self.codec.issue_access_token(user.id, family, role=user.role)
        refresh = self.codec.issue_refresh_token(user.id, family, token_id=refresh_id)
        return SessionTokens(
            user_id=user.id, family=family, access=access, refresh=refresh, role=user.role
        )

    async def login(self, user: User) -> SessionTokens:
        if not user.is_active:
            raise ForbiddenError("account is not active", detail={"status": user.status})
        row = await self.ledger.record_issuance(user.id, str(uuid.uuid4()))
        tokens = self._mint(user, row.token_family, row.id)
        logger.info("session_started", user_id=user.id, family_id=row.token_family)
        return tokens

    def _end(self, reason: str, **context: Any) -> SessionEndedError:
        if reason == "reused":
            logger.error("refresh_reuse_detected", reason=reason, **context)
        elif reason in ("invalid", "mismatch"):
            logger.warning("refresh_rejected", reason=reason, **context)
        else:
            logger.info("refresh_rejected", reason=reason, **context)
        return SessionEndedError(reason)

    async def refresh(self, refresh_token: str) -> SessionTokens:
        verified = self.codec.verify_refresh_token(refresh_token)
        if isinstance(verified, TokenInvalid):
            raise self._end("invalid", detail=verified.reason)
        if isinstance(verified, TokenExpired):
            raise self._end(
                "expired", user_id=verified.claims.subject, family_id=verified.claims.family
            )
        claims: TokenClaims = verified

        result = await self.ledger.rotate(claims.jti)
        if isinstance(result, NotFound):
            raise self._end("not_found", jti=claims.jti, user_id=claims.subject)
        if isinstance(result, AlreadyExpired):
            raise self._end(
                "expired", jti=claims.jti, family_id=result.token.token_family
            )
        if isinstance(result, ReuseDetected):
            await self._handle_reuse(result)
            raise self._end(
                "reused",
                jti=claims.jti,
                user_id=result.token.user_id,
                family_id=result.token.token_family,
                revoked=result.revoked_count,
            )

        previous = result.previous
        if previous.user_id != claims.subject or previous.token_family != claims.family:
            await self.ledger.revoke_family(previous.token_family)
            raise self._end(
                "mismatch", jti=claims.jti, user_id=previous.user_id, family_id=previous.token_family
            )

        user = await self._load_user(previous.user_id)
        if user is None or not user.is_active:
            await self.ledger.revoke_family(previous.token_family)
            raise self._end(
                "inactive", user_id=previous.user_id, family_id=previous.token_family
            )

        tokens = self._mint(user, previous.token_family, result.successor.id)
        logger.info(
            "session_refreshed",
            user_id=user.id,
            family_id=previous.token_family,
            jti=result.successor.id,
        )
        return tokens

    async def _handle_reuse(self, result: ReuseDetected) -> None:
        family = result.token.token_family
        await self.cache.set(family_revoked_key(family), True, ttl=self._denylist_ttl)
        if self.reuse_revokes_all_sessions:
            await self.ledger.revoke_all_for_user(result.token.user_id)
            await self.cache.set(
                user_cutoff_key(result.token.user_id),
                _epoch_ms(self._clock()),
                ttl=self._denylist_ttl,
            )

    async def logout(self, refresh_token: Optional[str]) -> LogoutResult:
        """Best-effort logout. Never raises; the caller clears cookies regardless."""

        if not refresh_token:
            return LogoutResult(revoked=0)
        verified = self.codec.verify_refresh_token(refresh_token)
        if isinstance(verified, TokenInvalid):
            logger.info("logout_token_unusable", detail=verified.reason)
            return LogoutResult(revoked=0)
        claims = verified.claims if isinstance(verified, TokenExpired) else verified
        try:
            revoked = await self.ledger.revoke_family(claims.family)
        except LedgerUnavailableError as exc:
            logger.warning(
                "logout_revoke_failed", family_id=claims.family, error=str(exc)
            )
            revoked = 0
        await self.cache.set(family_revoked_key(claims.family), True, ttl=self._denylist_ttl)
        logger.info("session_ended", user_id=claims.subject, family_id=claims.family, revoked=revoked)
        return LogoutResult(revoked=revoked, family=claims.family)

    async def logout_everywhere(self, context: AuthContext) -> int:
        revoked = await self.ledger.revoke_all_for_user(context.user_id)
        await self.cache.set(
            user_cutoff_key(context.user_id), _epoch_ms(self._clock()), ttl=self._denylist_ttl
        )
        logger.info("session_ended_everywhere", user_id=context.user_id, revoked=revoked)
        return revoked

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("authentication required")
        verified = self.codec.verify_access_token(access_token)
        if isinstance(verified, TokenExpired):
            raise AuthenticationError("access token expired")
        if isinstance(verified, TokenInvalid):
            raise AuthenticationError("invalid access token")
        if await self.cache.exists(family_revoked_key(verified.family)):
            raise AuthenticationError("session revoked")
        cutoff = await self.cache.get(user_cutoff_key(verified.subject))
        # Cutoff is epoch milliseconds; anything minted at or before it is dead
        if isinstance(cutoff, int) and _epoch_ms(verified.issued_at) <= cutoff:
            raise AuthenticationError("session revoked")
        return AuthContext(
            user_id=verified.subject,
            family=verified.family,
            role=verified.role,
            jti=verified.jti,
        )

    async def current_user(self, context: AuthContext) -> User:
        user = await self._load_user(context.user_id)
        if user is None:
            raise AuthenticationError("user no longer exists")
        return user


__all__ = [
    "SessionService",
    "SessionTokens",
    "AuthContext",
    "LogoutResult",
    "family_revoked_key",
    "user_cutoff_key",
]
