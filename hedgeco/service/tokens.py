from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from hedgeco.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime
    ttl_seconds: int


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    family: str
    jti: str
    issued_at: float
    expires_at: int
    token_type: str
    role: Optional[str] = None


@dataclass(frozen=True)
class TokenInvalid:
    reason: str


@dataclass(frozen=True)
class TokenExpired:
    """Signature checked out but the token is past ``exp``; claims are trustworthy."""

    claims: TokenClaims


VerifyResult = Union[TokenClaims, TokenInvalid, TokenExpired]


class TokenCodec:
    """Stateless HS256 signing and verification of access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``typ`` claim, so one kind can never be accepted in place of the other.
    Verification returns a value instead of raising; callers match on
    :class:`TokenClaims`, :class:`TokenInvalid` or :class:`TokenExpired`.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, clock: Callable[[], float] = time.time) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock=clock,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * (-len(segment) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: str, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode(self, token_type: str, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(token_type, signing_input)}"

    def _issue(
        self,
        token_type: str,
        subject: str,
        family: str,
        ttl: Optional[timedelta],
        jti: str,
        extra: Optional[dict[str, Any]] = None,
    ) -> IssuedToken:
        if not subject:
            raise ValueError("subject must be non-empty")
        if not family:
            raise ValueError("family must be non-empty")
        if ttl is None:
            ttl = self.access_ttl if token_type == ACCESS else self.refresh_ttl
        ttl_seconds = int(ttl.total_seconds())
        if ttl_seconds <= 0:
            raise ValueError("ttl must be positive")
        # iat keeps millisecond precision; exp stays on whole seconds
        now = self._clock()
        issued_at = round(now, 3)
        expires_at = int(now) + ttl_seconds
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "fam": family,
            "jti": jti,
            "typ": token_type,
            "iat": issued_at,
            "exp": expires_at,
        }
        if extra:
            payload.update(extra)
        return IssuedToken(
            token=self._encode(token_type, payload),
            jti=jti,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            ttl_seconds=ttl_seconds,
        )

    def issue_access_token(
        self,
        subject: str,
        family: str,
        ttl: Optional[timedelta] = None,
        *,
        role: Optional[str] = None,
    ) -> IssuedToken:
        extra = {"role": role} if role else None
        return self._issue(ACCESS, subject, family, ttl, str(uuid.uuid4()), extra)

    def issue_refresh_token(
        self,
        subject: str,
        family: str,
        ttl: Optional[timedelta] = None,
        *,
        token_id: str,
    ) -> IssuedToken:
        if not token_id:
            raise ValueError("token_id must be non-empty")
        return self._issue(REFRESH, subject, family, ttl, token_id)

    def verify_access_token(self, token: str) -> VerifyResult:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> VerifyResult:
        return self._verify(REFRESH, token)

    def _verify(self, token_type: str, token: str) -> VerifyResult:
        if not token or not isinstance(token, str):
            return TokenInvalid("empty")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return TokenInvalid("malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return TokenInvalid("malformed")
        if not isinstance(header, dict):
            return TokenInvalid("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return TokenInvalid("algorithm")

        expected_sig = self._sign(token_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return TokenInvalid("signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return TokenInvalid("malformed")
        if not isinstance(payload, dict):
            return TokenInvalid("malformed")
        if payload.get("typ") != token_type:
            return TokenInvalid("type")
        if payload.get("iss") != self.issuer:
            return TokenInvalid("issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return TokenInvalid("audience")

        try:
            claims = TokenClaims(
                subject=str(payload["sub"]),
                family=str(payload["fam"]),
                jti=str(payload["jti"]),
                issued_at=float(payload["iat"]),
                expires_at=int(payload["exp"]),
                token_type=token_type,
                role=payload.get("role"),
            )
        except (KeyError, TypeError, ValueError):
            return TokenInvalid("claims")

        if self._clock() >= claims.expires_at:
            return TokenExpired(claims)
        return claims


__all__ = [
    "IssuedToken",
    "TokenClaims",
    "TokenInvalid",
    "TokenExpired",
    "TokenCodec",
    "VerifyResult",
]
