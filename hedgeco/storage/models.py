from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

USER_ROLES = (
    "INVESTOR",
    "MANAGER",
    "SERVICE_PROVIDER",
    "NEWS_MEMBER",
    "ADMIN",
    "SUPER_ADMIN",
)

USER_STATUSES = ("PENDING_APPROVAL", "ACTIVE", "SUSPENDED", "DEACTIVATED")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "INVESTOR"
    status: str = "ACTIVE"
    email_verification_token: Optional[str] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass
class RefreshToken:
    """One issued refresh credential. ``id`` doubles as the token's ``jti``."""

    id: str
    user_id: str
    token_family: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by_token_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_family: str,
        ttl_minutes: int,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_family=token_family,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_current(self) -> bool:
        return self.revoked_at is None and self.replaced_by_token_id is None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return (now or utcnow()) >= expires_at


@dataclass
class RotationOutcome:
    """Result of a store-level atomic rotation.

    ``status`` is one of ``rotated``, ``reused``, ``not_found`` or ``expired``.
    """

    status: str
    presented: Optional[RefreshToken] = None
    successor: Optional[RefreshToken] = None
    revoked_count: int = 0
