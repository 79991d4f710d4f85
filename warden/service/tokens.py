from __future__ import annotations

import re
import time
import uuid
from typing import Any, Optional

import jwt

from warden.logging import get_logger
from warden.service.errors import AuthenticationError, InvalidDurationFormat
from warden.storage.models import TokenPair, TokenPayload, User

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([dhms])$")
_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}

TOKEN_KIND_ACCESS = "access"
TOKEN_KIND_REFRESH = "refresh"


class TokenError(AuthenticationError):
    """Token could not be verified."""


class TokenExpired(TokenError):
    """Token ``exp`` claim is in the past."""


class InvalidTokenSignature(TokenError):
    """Token is malformed or signed with another key."""


def parse_duration(value: str) -> int:
    """Convert ``<integer><d|h|m|s>`` into seconds. Zero lengths are rejected.

    >>> parse_duration("7d")
    604800
    """
    match = _DURATION_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidDurationFormat(value)
    amount, unit = match.groups()
    if int(amount) == 0:
        raise InvalidDurationFormat(value)
    return int(amount) * _UNIT_SECONDS[unit]


class TokenService:
    """Issues and verifies HS256 access/refresh token pairs.

    Access and refresh tokens use distinct secrets and lifetimes. Every token
    carries a random ``jti`` so two pairs issued within the same second for
    the same user never collide.
    """

    algorithm = "HS256"

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_expires_in: str = "7d",
        refresh_expires_in: str = "30d",
    ) -> None:
        self._secrets = {
            TOKEN_KIND_ACCESS: access_secret,
            TOKEN_KIND_REFRESH: refresh_secret,
        }
        self.access_ttl = parse_duration(access_expires_in)
        self.refresh_ttl = parse_duration(refresh_expires_in)

    def _ttl_for(self, kind: str) -> int:
        return self.access_ttl if kind == TOKEN_KIND_ACCESS else self.refresh_ttl

    def _encode(self, user: User, kind: str, now: int) -> str:
        payload = {
            "sub": str(user.id),
            "username": user.username,
            "email": user.email,
            "iat": now,
            "exp": now + self._ttl_for(kind),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=self.algorithm)

    def issue(self, user: User, *, now: Optional[int] = None) -> TokenPair:
        issued_at = int(now if now is not None else time.time())
        return TokenPair(
            access_token=self._encode(user, TOKEN_KIND_ACCESS, issued_at),
            refresh_token=self._encode(user, TOKEN_KIND_REFRESH, issued_at),
            expires_in=self.access_ttl,
        )

    def verify(self, token: str, kind: str = TOKEN_KIND_ACCESS) -> TokenPayload:
        secret = self._secrets.get(kind)
        if secret is None:
            raise ValueError(f"unknown token kind: {kind}")
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "iat", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenSignature("invalid token") from exc
        try:
            subject = int(claims["sub"])
        except (TypeError, ValueError) as exc:
            raise InvalidTokenSignature("invalid token") from exc
        return TokenPayload(
            sub=subject,
            username=claims.get("username", ""),
            email=claims.get("email"),
            iat=int(claims["iat"]),
            exp=int(claims["exp"]),
        )

    @staticmethod
    def decode_unverified(token: str) -> Optional[dict[str, Any]]:
        """Read claims without checking signature or expiry."""
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None

    @staticmethod
    def remaining_ttl(claims: Optional[dict[str, Any]], *, now: Optional[float] = None) -> int:
        """Seconds until ``exp``, clamped at zero."""
        if not claims or "exp" not in claims:
            return 0
        current = int(now if now is not None else time.time())
        try:
            return max(0, int(claims["exp"]) - current)
        except (TypeError, ValueError):
            return 0
