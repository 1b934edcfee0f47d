from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from hedgeco.logging import get_logger
from hedgeco.storage.errors import ConstraintViolation
from hedgeco.storage.models import (
    USER_ROLES,
    USER_STATUSES,
    RefreshToken,
    RotationOutcome,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read returns a copy so callers never hold a reference into the
    store's own rows.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations; rotation nests revoke_token_family
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users

    def create_user(
        self,
        email: str,
        *,
        role: str = "INVESTOR",
        status: str = "ACTIVE",
        password_hash: Optional[str] = None,
        email_verification_token: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        if role not in USER_ROLES:
            raise ValueError(f"unknown role {role!r}")
        if status not in USER_STATUSES:
            raise ValueError(f"unknown status {status!r}")
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=normalized,
                role=role,
                status=status,
                password_hash=password_hash,
                email_verification_token=email_verification_token,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    # refresh tokens

    def insert_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "id"})
            if any(
                row.token_family == token.token_family
                for row in self.refresh_tokens.values()
            ):
                raise ConstraintViolation(
                    "token family already issued", {"field": "token_family"}
                )
            self.refresh_tokens[token.id] = replace(token)
            return replace(token)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            row = self.refresh_tokens.get(token_id)
            return replace(row) if row else None

    def list_token_family(self, token_family: str) -> List[RefreshToken]:
        with self._data_lock:
            rows = [
                replace(row)
                for row in self.refresh_tokens.values()
                if row.token_family == token_family
            ]
        rows.sort(key=lambda row: row.issued_at)
        return rows

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
    ) -> RotationOutcome:
        """Close ``token_id`` and open its successor as one step.

        The lookup, the reuse check and both writes happen under the data
        lock, so two rotations of the same id can never both succeed.
        """
        now = now or utcnow()
        with self._data_lock:
            row = self.refresh_tokens.get(token_id)
            if row is None:
                return RotationOutcome(status="not_found")
            if not row.is_current:
                revoked = self.revoke_token_family(row.token_family, now=now)
                return RotationOutcome(
                    status="reused", presented=replace(row), revoked_count=revoked
                )
            if row.is_expired(now):
                return RotationOutcome(status="expired", presented=replace(row))
            successor = RefreshToken.new(
                row.user_id, row.token_family, ttl_minutes, now=now
            )
            row.replaced_by_token_id = successor.id
            self.refresh_tokens[successor.id] = successor
            return RotationOutcome(
                status="rotated", presented=replace(row), successor=replace(successor)
            )

    def revoke_token_family(
        self, token_family: str, *, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.token_family == token_family and row.revoked_at is None:
                    row.revoked_at = now
                    revoked += 1
        return revoked

    def revoke_user_refresh_tokens(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        revoked = 0
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and row.revoked_at is None:
                    row.revoked_at = now
                    revoked += 1
        return revoked
