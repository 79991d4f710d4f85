from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})

RecordStatus = Literal["active", "inactive"]
UserStatus = Literal["active", "inactive", "banned"]
MenuType = Literal["directory", "menu", "button"]


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
_PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)[a-zA-Z\d@$!%*?&]{6,}$")
_PHONE_PATTERN = re.compile(r"^1[3-9]\d{9}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Password needs a lower case letter, an upper case letter and a digit."""
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(
            "password must contain an upper case letter, a lower case letter and a digit"
        )
    return value


# -- auth ---------------------------------------------------------------------


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: str
    password: str
    nickname: Optional[str] = Field(default=None, min_length=1, max_length=50)
    phone: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError("username may only contain letters, digits and underscores")
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _PHONE_PATTERN.match(value):
            raise ValueError("invalid phone number")
        return value


class LoginRequest(BaseModel):
    # username, email or phone number
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=100)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int

    model_config = ConfigDict(from_attributes=True)


# -- catalog records ----------------------------------------------------------


class PermissionResponse(BaseModel):
    id: int
    name: str
    code: str
    module: str
    action: str
    description: Optional[str] = None
    resource: Optional[str] = None
    status: str
    level: int
    is_system: bool
    sort: int
    parent_id: Optional[int] = None
    path: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionTreeNode(PermissionResponse):
    children: List["PermissionTreeNode"] = Field(default_factory=list)


class RoleResponse(BaseModel):
    id: int
    name: str
    code: str
    description: Optional[str] = None
    status: str
    level: int
    is_system: bool
    sort: int
    permissions: List[PermissionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleSummary(BaseModel):
    id: int
    name: str
    code: str
    status: str
    level: int

    model_config = ConfigDict(from_attributes=True)


class UserResponse(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    status: str
    level: int
    roles: List[RoleSummary] = Field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class UserPermissionsResponse(BaseModel):
    user_id: int
    permissions: List[str]
    is_super_admin: bool = False


class MenuResponse(BaseModel):
    id: int
    name: str
    title: str
    path: str
    type: str
    icon: Optional[str] = None
    component: Optional[str] = None
    redirect: Optional[str] = None
    status: str
    hidden: bool
    keep_alive: bool
    affix: bool
    sort: int
    parent_id: Optional[int] = None
    menu_path: Optional[str] = None
    external_link: Optional[str] = None
    is_system: bool
    description: Optional[str] = None
    permissions: List[PermissionResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MenuTreeNode(MenuResponse):
    children: List["MenuTreeNode"] = Field(default_factory=list)


class PageResponse(BaseModel):
    items: List[Any]
    total: int
    page: int
    limit: int


# -- role administration ------------------------------------------------------


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    status: RecordStatus = "active"
    level: int = Field(default=0, ge=0)
    is_system: bool = False
    sort: int = Field(default=0, ge=0)
    permission_ids: Optional[List[int]] = None


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    code: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    status: Optional[RecordStatus] = None
    level: Optional[int] = Field(default=None, ge=0)
    is_system: Optional[bool] = None
    sort: Optional[int] = Field(default=None, ge=0)
    permission_ids: Optional[List[int]] = None


class RolePermissionsRequest(BaseModel):
    permission_ids: List[int] = Field(..., min_length=1)


class RoleAssignRequest(BaseModel):
    """Grant (or revoke) every role in ``role_ids`` for every user in ``user_ids``."""

    user_ids: List[int] = Field(..., min_length=1)
    role_ids: List[int] = Field(..., min_length=1)


class RoleUsersRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)


# -- user administration ------------------------------------------------------


class UserStatusRequest(BaseModel):
    status: UserStatus


class UserBatchStatusRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1)
    status: UserStatus


# -- permission administration ------------------------------------------------


class PermissionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    code: Optional[str] = Field(default=None, max_length=100)
    module: str = Field(..., min_length=1, max_length=50)
    action: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    resource: Optional[str] = Field(default=None, max_length=200)
    status: RecordStatus = "active"
    level: int = Field(default=0, ge=0)
    is_system: bool = False
    sort: int = Field(default=0, ge=0)
    parent_id: Optional[int] = None


class PermissionUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    code: Optional[str] = Field(default=None, max_length=100)
    module: Optional[str] = Field(default=None, min_length=1, max_length=50)
    action: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)
    resource: Optional[str] = Field(default=None, max_length=200)
    status: Optional[RecordStatus] = None
    level: Optional[int] = Field(default=None, ge=0)
    is_system: Optional[bool] = None
    sort: Optional[int] = Field(default=None, ge=0)
    parent_id: Optional[int] = None


# -- menu administration ------------------------------------------------------


class MenuCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=50)
    path: str = Field(..., min_length=1, max_length=200)
    type: MenuType = "menu"
    icon: Optional[str] = Field(default=None, max_length=50)
    component: Optional[str] = Field(default=None, max_length=200)
    redirect: Optional[str] = Field(default=None, max_length=200)
    status: RecordStatus = "active"
    hidden: bool = False
    keep_alive: bool = False
    affix: bool = False
    sort: int = Field(default=0, ge=0)
    parent_id: Optional[int] = None
    external_link: Optional[str] = Field(default=None, max_length=500)
    is_system: bool = False
    description: Optional[str] = Field(default=None, max_length=500)
    permission_ids: Optional[List[int]] = None


class MenuUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    title: Optional[str] = Field(default=None, min_length=1, max_length=50)
    path: Optional[str] = Field(default=None, min_length=1, max_length=200)
    type: Optional[MenuType] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    component: Optional[str] = Field(default=None, max_length=200)
    redirect: Optional[str] = Field(default=None, max_length=200)
    status: Optional[RecordStatus] = None
    hidden: Optional[bool] = None
    keep_alive: Optional[bool] = None
    affix: Optional[bool] = None
    sort: Optional[int] = Field(default=None, ge=0)
    parent_id: Optional[int] = None
    external_link: Optional[str] = Field(default=None, max_length=500)
    is_system: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=500)
    permission_ids: Optional[List[int]] = None
