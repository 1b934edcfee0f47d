from __future__ import annotations

import asyncio
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hedgeco.logging import get_logger
from hedgeco.service.errors import LedgerUnavailableError
from hedgeco.storage.errors import STORAGE_FAILURES
from hedgeco.storage.models import User

logger = get_logger(__name__)


class CredentialVerifier:
    """Resolves an email/password pair to a stored user via argon2id."""

    def __init__(self, store: Any) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        if not password:
            raise ValueError("password must be non-empty")
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False

    def _authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user, password):
            return None
        return user

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        """Return the user for valid credentials, ``None`` otherwise.

        Hash verification is CPU-bound, so the lookup and the check run in a
        worker thread together.
        """
        try:
            return await asyncio.to_thread(self._authenticate, email, password)
        except STORAGE_FAILURES as exc:
            raise LedgerUnavailableError("user directory unavailable") from exc


__all__ = ["CredentialVerifier"]
