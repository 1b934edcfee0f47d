from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Union

from hedgeco.logging import get_logger
from hedgeco.service.errors import LedgerUnavailableError
from hedgeco.storage.errors import STORAGE_FAILURES
from hedgeco.storage.models import RefreshToken

logger = get_logger(__name__)


@dataclass(frozen=True)
class Rotated:
    previous: RefreshToken
    successor: RefreshToken


@dataclass(frozen=True)
class ReuseDetected:
    token: RefreshToken
    revoked_count: int


@dataclass(frozen=True)
class NotFound:
    token_id: str


@dataclass(frozen=True)
class AlreadyExpired:
    token: RefreshToken


RotationResult = Union[Rotated, ReuseDetected, NotFound, AlreadyExpired]


class TokenLedger:
    """Durable record of refresh-token issuance, rotation and revocation.

    The backing store is synchronous; every call is handed to a worker thread
    so the event loop never blocks on the database. Atomicity of rotation is
    the store's job (row lock or data lock), not this class's.
    """

    def __init__(self, store: Any, *, refresh_ttl_minutes: int) -> None:
        self.store = store
        self.refresh_ttl_minutes = refresh_ttl_minutes

    async def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except STORAGE_FAILURES as exc:
            logger.error("ledger_unavailable", op=op, error=str(exc))
            raise LedgerUnavailableError("token ledger unavailable") from exc

    async def record_issuance(
        self, user_id: str, family: Optional[str] = None
    ) -> RefreshToken:
        """Open a brand-new family with its first token.

        Raises ``ConstraintViolation`` if ``family`` already has rows.
        """
        row = RefreshToken.new(
            user_id, family or str(uuid.uuid4()), self.refresh_ttl_minutes
        )
        stored = await self._call("record_issuance", self.store.insert_refresh_token, row)
        logger.info(
            "refresh_family_opened", user_id=user_id, family_id=stored.token_family, jti=stored.id
        )
        return stored

    async def rotate(self, token_id: str) -> RotationResult:
        outcome = await self._call(
            "rotate",
            self.store.rotate_refresh_token,
            token_id,
            ttl_minutes=self.refresh_ttl_minutes,
        )
        if outcome.status == "rotated":
            return Rotated(previous=outcome.presented, successor=outcome.successor)
        if outcome.status == "reused":
            return ReuseDetected(token=outcome.presented, revoked_count=outcome.revoked_count)
        if outcome.status == "expired":
            return AlreadyExpired(token=outcome.presented)
        return NotFound(token_id=token_id)

    async def revoke_family(self, family: str) -> int:
        revoked = await self._call("revoke_family", self.store.revoke_token_family, family)
        if revoked:
            logger.info("refresh_family_revoked", family_id=family, revoked=revoked)
        return revoked

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = await self._call(
            "revoke_all_for_user", self.store.revoke_user_refresh_tokens, user_id
        )
        logger.info("refresh_user_revoked", user_id=user_id, revoked=revoked)
        return revoked

    async def get(self, token_id: str) -> Optional[RefreshToken]:
        return await self._call("get", self.store.get_refresh_token, token_id)

    async def list_family(self, family: str) -> List[RefreshToken]:
        return await self._call("list_family", self.store.list_token_family, family)


__all__ = [
    "TokenLedger",
    "Rotated",
    "ReuseDetected",
    "NotFound",
    "AlreadyExpired",
    "RotationResult",
]
