from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_BANNED = "banned"

USER_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_BANNED)
RECORD_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE)

SUPER_ADMIN_ROLE_CODES = ("admin", "super_admin")

MENU_TYPE_DIRECTORY = "directory"
MENU_TYPE_MENU = "menu"
MENU_TYPE_BUTTON = "button"
MENU_TYPES = (MENU_TYPE_DIRECTORY, MENU_TYPE_MENU, MENU_TYPE_BUTTON)


@dataclass
class Permission:
    id: int
    name: str
    code: str
    module: str
    action: str
    description: Optional[str] = None
    resource: Optional[str] = None
    status: str = STATUS_ACTIVE
    level: int = 0
    is_system: bool = False
    sort: int = 0
    parent_id: Optional[int] = None
    path: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Role:
    id: int
    name: str
    code: str
    description: Optional[str] = None
    status: str = STATUS_ACTIVE
    level: int = 0
    is_system: bool = False
    sort: int = 0
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class User:
    """Principal record. The password hash lives in a separate credential row."""

    id: int
    username: str
    email: Optional[str] = None
    phone: Optional[str] = None
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    status: str = STATUS_ACTIVE
    level: int = 0
    roles: List[Role] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    register_ip: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Menu:
    id: int
    name: str
    title: str
    path: str
    type: str = MENU_TYPE_MENU
    icon: Optional[str] = None
    component: Optional[str] = None
    redirect: Optional[str] = None
    status: str = STATUS_ACTIVE
    hidden: bool = False
    keep_alive: bool = False
    affix: bool = False
    sort: int = 0
    parent_id: Optional[int] = None
    menu_path: Optional[str] = None
    external_link: Optional[str] = None
    is_system: bool = False
    description: Optional[str] = None
    permissions: List[Permission] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class TokenPayload:
    sub: int
    username: str
    email: Optional[str]
    iat: int
    exp: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
