from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import AuthenticationError, ConflictError, NotFoundError
from warden.service.permissions import is_active
from warden.service.tokens import TOKEN_KIND_REFRESH, TokenService
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Role, TokenPair, User
from warden.storage.redis_cache import SessionCache

logger = get_logger(__name__)

PHONE_PATTERN = re.compile(r"^1[3-9]\d{9}$")

LOGIN_FAILED_MESSAGE = "incorrect username or password"
ACCOUNT_DISABLED_MESSAGE = "account disabled"
INVALID_REFRESH_MESSAGE = "invalid refresh token"


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        nickname: Optional[str] = None,
        status: str = "active",
        register_ip: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def get_user_credentials(
        self, field_name: str, value: str
    ) -> Optional[Tuple[User, str]]: ...

    def update_user_login(self, user_id: int, at: datetime, ip: Optional[str]) -> None: ...

    def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> Optional[User]: ...

    def get_role_by_code(self, code: str) -> Optional[Role]: ...


@dataclass
class RegisterInput:
    username: str
    password: str
    email: Optional[str] = None
    phone: Optional[str] = None
    nickname: Optional[str] = None


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


class AuthService:
    """Registration, login, token rotation and logout over the session cache.

    Every issued pair is mirrored into the cache as the user's single
    session pointer and refresh pointer, so a new login silently retires
    the previous session.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: SessionCache,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords -----------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def lookup_field(identifier: str) -> str:
        """Which column a login identifier addresses."""
        if "@" in identifier:
            return "email"
        if PHONE_PATTERN.match(identifier):
            return "phone"
        return "username"

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def _store_pair(self, user_id: int, tokens: TokenPair) -> None:
        await asyncio.gather(
            self.cache.store_refresh_token(user_id, tokens.refresh_token, self.tokens.refresh_ttl),
            self.cache.store_session(user_id, tokens.access_token, self.tokens.access_ttl),
        )

    async def _assign_default_role(self, user: User) -> User:
        code = self.settings.default_role_code
        if not code:
            return user
        role = await asyncio.to_thread(self.store.get_role_by_code, code)
        if not role:
            self.logger.warning("default_role_missing", role_code=code, user_id=user.id)
            return user
        updated = await asyncio.to_thread(self.store.set_user_roles, user.id, [role.id])
        return updated or user

    # -- protocol ------------------------------------------------------------

    async def register(self, data: RegisterInput, client_ip: Optional[str] = None) -> AuthResult:
        checks = (
            ("username", data.username, self.store.get_user_by_username),
            ("email", data.email, self.store.get_user_by_email),
            ("phone", data.phone, self.store.get_user_by_phone),
        )
        for field_name, value, lookup in checks:
            if value and await asyncio.to_thread(lookup, value):
                raise ConflictError(f"{field_name} already exists", detail={"field": field_name})

        password_hash = await asyncio.to_thread(self._hash_password, data.password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                data.username,
                password_hash,
                email=data.email,
                phone=data.phone,
                nickname=data.nickname,
                register_ip=client_ip,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        user = await self._assign_default_role(user)
        tokens = self.tokens.issue(user)
        await self._store_pair(user.id, tokens)
        self.logger.info("user_registered", user_id=user.id, client_ip=client_ip)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self, identifier: str, password: str, client_ip: Optional[str] = None
    ) -> AuthResult:
        field_name = self.lookup_field(identifier)
        record = await asyncio.to_thread(self.store.get_user_credentials, field_name, identifier)
        if not record:
            self.logger.info("login_failed", reason="unknown_user", lookup=field_name)
            raise AuthenticationError(LOGIN_FAILED_MESSAGE)
        user, password_hash = record
        if not await asyncio.to_thread(self._verify_password, password_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(LOGIN_FAILED_MESSAGE)
        if not is_active(user):
            self.logger.info("login_failed", reason="inactive", user_id=user.id, status=user.status)
            raise AuthenticationError(ACCOUNT_DISABLED_MESSAGE)

        # One live session per user: drop the previous pointers before issuing
        await asyncio.gather(
            self.cache.remove_refresh_token(user.id),
            self.cache.remove_session(user.id),
        )
        tokens = self.tokens.issue(user)
        await self._store_pair(user.id, tokens)

        logged_in_at = datetime.utcnow()
        await asyncio.to_thread(self.store.update_user_login, user.id, logged_in_at, client_ip)
        self.logger.info("login_succeeded", user_id=user.id, client_ip=client_ip)
        user = replace(user, last_login_at=logged_in_at, last_login_ip=client_ip)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            return await self._rotate(refresh_token)
        except AuthenticationError as exc:
            self.logger.info("refresh_rejected", reason=exc.message)
            raise AuthenticationError(INVALID_REFRESH_MESSAGE) from exc
        except Exception as exc:
            self.logger.error(
                "refresh_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise AuthenticationError(INVALID_REFRESH_MESSAGE) from exc

    async def _rotate(self, refresh_token: str) -> TokenPair:
        if not refresh_token:
            raise AuthenticationError("missing refresh token")
        if await self.cache.is_blacklisted(refresh_token):
            raise AuthenticationError("refresh token revoked")
        payload = self.tokens.verify(refresh_token, TOKEN_KIND_REFRESH)
        user = await asyncio.to_thread(self.store.get_user, payload.sub)
        if not user or not is_active(user):
            raise AuthenticationError("user unavailable")
        if not await self.cache.validate_refresh_token(user.id, refresh_token):
            raise AuthenticationError("refresh token superseded")

        remaining = max(1, payload.exp - int(time.time()))
        await self.cache.blacklist(refresh_token, remaining)
        tokens = self.tokens.issue(user)
        await self._store_pair(user.id, tokens)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return tokens

    async def logout(
        self, user_id: int, access_token: str, refresh_token: Optional[str] = None
    ) -> None:
        """Revoke both tokens; failures are logged and never raised."""
        try:
            claims = self.tokens.decode_unverified(access_token) if access_token else None
            remaining = self.tokens.remaining_ttl(claims)
            await self.cache.clear_all_tokens(user_id, access_token, refresh_token, remaining)
            self.logger.info("user_logged_out", user_id=user_id)
        except Exception as exc:
            self.logger.error(
                "logout_cleanup_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await asyncio.gather(
                self.cache.remove_refresh_token(user_id),
                self.cache.remove_session(user_id),
                return_exceptions=True,
            )

    async def authenticate(self, authorization: Optional[str]) -> User:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        if await self.cache.is_blacklisted(token):
            raise AuthenticationError("token revoked")
        payload = self.tokens.verify(token)
        if not await self.cache.is_session_valid(payload.sub, token):
            raise AuthenticationError("session expired, please log in again")
        user = await asyncio.to_thread(self.store.get_user, payload.sub)
        if not user:
            raise AuthenticationError("user not found")
        if not is_active(user):
            raise AuthenticationError(ACCOUNT_DISABLED_MESSAGE)
        return user

    async def get_profile(self, user_id: int) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user
