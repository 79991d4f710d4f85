from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple, TypeVar

from warden.logging import get_logger
from warden.storage.common import (
    MENU_UPDATABLE,
    PERMISSION_UPDATABLE,
    ROLE_UPDATABLE,
    dedupe_ids,
    ensure_lookup_field,
    filter_updates,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import STATUS_ACTIVE, Menu, Permission, Role, User

_T = TypeVar("_T", Role, Permission, Menu)


class MemoryStore:
    """In-memory credential store used by tests and local development.

    Relations are kept as id lists and hydrated on read, so every returned
    record is a detached copy reflecting the state at call time. Roles,
    permissions and menus are soft-deleted: the record keeps its
    ``deleted_at`` stamp and disappears from every read.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.password_hashes: Dict[int, str] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self.menus: Dict[int, Menu] = {}
        self.user_roles: Dict[int, List[int]] = {}
        self.role_permissions: Dict[int, List[int]] = {}
        self.menu_permissions: Dict[int, List[int]] = {}
        self._sequences: Dict[str, int] = {}
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so hydration helpers can re-enter from locked methods
        self._data_lock = threading.RLock()

    def _next_id(self, name: str) -> int:
        with self._seq_lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    @staticmethod
    def _live(table: Dict[int, _T]) -> List[_T]:
        return [record for record in table.values() if record.deleted_at is None]

    @staticmethod
    def _live_get(table: Dict[int, _T], record_id: int) -> Optional[_T]:
        record = table.get(record_id)
        if record is None or record.deleted_at is not None:
            return None
        return record

    # -- hydration -----------------------------------------------------------

    def _linked_permissions(self, ids: Iterable[int]) -> List[Permission]:
        linked = []
        for pid in ids:
            permission = self._live_get(self.permissions, pid)
            if permission:
                linked.append(replace(permission))
        return linked

    def _hydrate_role(self, role: Role) -> Role:
        return replace(
            role, permissions=self._linked_permissions(self.role_permissions.get(role.id, []))
        )

    def _hydrate_user(self, user: User) -> User:
        roles = []
        for rid in self.user_roles.get(user.id, []):
            role = self._live_get(self.roles, rid)
            if role:
                roles.append(self._hydrate_role(role))
        return replace(user, roles=roles)

    def _hydrate_menu(self, menu: Menu) -> Menu:
        return replace(
            menu, permissions=self._linked_permissions(self.menu_permissions.get(menu.id, []))
        )

    def _existing_ids(self, table: Dict[int, _T], ids: Iterable[int]) -> List[int]:
        return [i for i in dedupe_ids(ids) if self._live_get(table, i) is not None]

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password_hash: str,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        nickname: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        register_ip: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            for field_name, value in (("username", username), ("email", email), ("phone", phone)):
                if value and any(
                    getattr(existing, field_name) == value for existing in self.users.values()
                ):
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
                    )
            user = User(
                id=self._next_id("user"),
                username=username,
                email=email,
                phone=phone,
                nickname=nickname or username,
                status=status,
                register_ip=register_ip,
            )
            self.users[user.id] = user
            self.password_hashes[user.id] = password_hash
            self.user_roles[user.id] = []
            return self._hydrate_user(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._hydrate_user(user) if user else None

    def _find_user(self, field_name: str, value: str) -> Optional[User]:
        ensure_lookup_field(field_name)
        for user in self.users.values():
            if value and getattr(user, field_name) == value:
                return user
        return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user("username", username)
            return self._hydrate_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user("email", email)
            return self._hydrate_user(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user("phone", phone)
            return self._hydrate_user(user) if user else None

    def get_user_credentials(
        self, field_name: str, value: str
    ) -> Optional[Tuple[User, str]]:
        """Authentication lookup; the only read that returns the password hash."""
        with self._data_lock:
            user = self._find_user(field_name, value)
            if not user:
                return None
            return self._hydrate_user(user), self.password_hashes.get(user.id, "")

    def update_user_login(self, user_id: int, at: datetime, ip: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at
                user.last_login_ip = ip
                user.updated_at = datetime.utcnow()

    def set_user_status(self, user_id: int, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            user.updated_at = datetime.utcnow()
            return self._hydrate_user(user)

    def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self.user_roles[user_id] = self._existing_ids(self.roles, role_ids)
            return self._hydrate_user(user)

    def list_user_ids_with_role(self, role_id: int) -> List[int]:
        with self._data_lock:
            if self._live_get(self.roles, role_id) is None:
                return []
            return sorted(uid for uid, rids in self.user_roles.items() if role_id in rids)

    # -- roles ---------------------------------------------------------------

    def _check_role_unique(self, code: Optional[str], name: Optional[str], skip_id: int = 0) -> None:
        for existing in self._live(self.roles):
            if existing.id == skip_id:
                continue
            if code is not None and existing.code == code:
                raise ConstraintViolation("role code already exists", {"field": "code"})
            if name is not None and existing.name == name:
                raise ConstraintViolation("role name already exists", {"field": "name"})

    def create_role(
        self,
        name: str,
        code: str,
        *,
        description: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        level: int = 0,
        is_system: bool = False,
        sort: int = 0,
        permission_ids: Optional[Iterable[int]] = None,
    ) -> Role:
        with self._data_lock:
            self._check_role_unique(code, name)
            role = Role(
                id=self._next_id("role"),
                name=name,
                code=code,
                description=description,
                status=status,
                level=level,
                is_system=is_system,
                sort=sort,
            )
            self.roles[role.id] = role
            self.role_permissions[role.id] = self._existing_ids(
                self.permissions, permission_ids or []
            )
            return self._hydrate_role(role)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self._live_get(self.roles, role_id)
            return self._hydrate_role(role) if role else None

    def get_roles(self, role_ids: Iterable[int]) -> List[Role]:
        with self._data_lock:
            return [
                self._hydrate_role(self.roles[rid])
                for rid in self._existing_ids(self.roles, role_ids)
            ]

    def get_role_by_code(self, code: str) -> Optional[Role]:
        with self._data_lock:
            for role in self._live(self.roles):
                if role.code == code:
                    return self._hydrate_role(role)
            return None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self._live(self.roles):
                if role.name == name:
                    return self._hydrate_role(role)
            return None

    def list_roles(
        self, *, status: Optional[str] = None, is_system: Optional[bool] = None
    ) -> List[Role]:
        with self._data_lock:
            roles = [
                r
                for r in self._live(self.roles)
                if (status is None or r.status == status)
                and (is_system is None or r.is_system == is_system)
            ]
            roles.sort(key=lambda r: (-r.sort, -r.level, r.id))
            return [self._hydrate_role(r) for r in roles]

    def update_role(
        self,
        role_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Optional[Role]:
        updates = filter_updates(fields, ROLE_UPDATABLE)
        with self._data_lock:
            role = self._live_get(self.roles, role_id)
            if not role:
                return None
            self._check_role_unique(updates.get("code"), updates.get("name"), skip_id=role_id)
            for key, value in updates.items():
                setattr(role, key, value)
            if permission_ids is not None:
                self.role_permissions[role_id] = self._existing_ids(
                    self.permissions, permission_ids
                )
            role.updated_at = datetime.utcnow()
            return self._hydrate_role(role)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            role = self._live_get(self.roles, role_id)
            if role is None:
                return False
            role.deleted_at = datetime.utcnow()
            self.role_permissions.pop(role_id, None)
            for rids in self.user_roles.values():
                if role_id in rids:
                    rids.remove(role_id)
            return True

    # -- permissions ---------------------------------------------------------

    def _check_permission_code(self, code: str, skip_id: int = 0) -> None:
        if any(p.code == code and p.id != skip_id for p in self._live(self.permissions)):
            raise ConstraintViolation("permission code already exists", {"field": "code"})

    def create_permission(
        self,
        name: str,
        code: str,
        module: str,
        action: str,
        *,
        description: Optional[str] = None,
        resource: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        level: int = 0,
        is_system: bool = False,
        sort: int = 0,
        parent_id: Optional[int] = None,
        path: Optional[str] = None,
    ) -> Permission:
        with self._data_lock:
            self._check_permission_code(code)
            permission = Permission(
                id=self._next_id("permission"),
                name=name,
                code=code,
                module=module,
                action=action,
                description=description,
                resource=resource,
                status=status,
                level=level,
                is_system=is_system,
                sort=sort,
                parent_id=parent_id,
                path=path,
            )
            self.permissions[permission.id] = permission
            return replace(permission)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._data_lock:
            permission = self._live_get(self.permissions, permission_id)
            return replace(permission) if permission else None

    def get_permissions(self, permission_ids: Iterable[int]) -> List[Permission]:
        with self._data_lock:
            return self._linked_permissions(dedupe_ids(permission_ids))

    def find_permission_by_code(
        self, code: str, status: Optional[str] = None
    ) -> Optional[Permission]:
        with self._data_lock:
            for permission in self._live(self.permissions):
                if permission.code == code and (status is None or permission.status == status):
                    return replace(permission)
            return None

    def find_permission_by_resource_action(
        self, resource: str, action: str, status: Optional[str] = None
    ) -> Optional[Permission]:
        with self._data_lock:
            for permission in sorted(self._live(self.permissions), key=lambda p: p.id):
                if (
                    permission.resource == resource
                    and permission.action == action
                    and (status is None or permission.status == status)
                ):
                    return replace(permission)
            return None

    def find_permissions_for_role_ids(
        self, role_ids: Iterable[int], status: Optional[str] = None
    ) -> List[Permission]:
        with self._data_lock:
            seen: List[int] = []
            for rid in dedupe_ids(role_ids):
                for pid in self.role_permissions.get(rid, []):
                    if pid not in seen:
                        seen.append(pid)
            return [
                p
                for p in self._linked_permissions(seen)
                if status is None or p.status == status
            ]

    def list_permissions(
        self, *, status: Optional[str] = None, module: Optional[str] = None
    ) -> List[Permission]:
        with self._data_lock:
            permissions = [
                p
                for p in self._live(self.permissions)
                if (status is None or p.status == status)
                and (module is None or p.module == module)
            ]
            permissions.sort(key=lambda p: (p.sort, p.id))
            return [replace(p) for p in permissions]

    def list_permission_children(self, parent_id: int) -> List[Permission]:
        with self._data_lock:
            children = [p for p in self._live(self.permissions) if p.parent_id == parent_id]
            children.sort(key=lambda p: (p.sort, p.id))
            return [replace(p) for p in children]

    def update_permission(self, permission_id: int, **fields) -> Optional[Permission]:
        updates = filter_updates(fields, PERMISSION_UPDATABLE)
        with self._data_lock:
            permission = self._live_get(self.permissions, permission_id)
            if not permission:
                return None
            if "code" in updates:
                self._check_permission_code(updates["code"], skip_id=permission_id)
            for key, value in updates.items():
                setattr(permission, key, value)
            permission.updated_at = datetime.utcnow()
            return replace(permission)

    def delete_permission(self, permission_id: int) -> bool:
        with self._data_lock:
            permission = self._live_get(self.permissions, permission_id)
            if permission is None:
                return False
            permission.deleted_at = datetime.utcnow()
            for pids in list(self.role_permissions.values()) + list(self.menu_permissions.values()):
                if permission_id in pids:
                    pids.remove(permission_id)
            return True

    # -- menus ---------------------------------------------------------------

    def _check_menu_path(self, path: str, skip_id: int = 0) -> None:
        if any(m.path == path and m.id != skip_id for m in self._live(self.menus)):
            raise ConstraintViolation("menu path already exists", {"field": "path"})

    def create_menu(
        self,
        name: str,
        title: str,
        path: str,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Menu:
        extra = filter_updates(fields, MENU_UPDATABLE)
        with self._data_lock:
            self._check_menu_path(path)
            menu = Menu(id=self._next_id("menu"), name=name, title=title, path=path, **extra)
            self.menus[menu.id] = menu
            self.menu_permissions[menu.id] = self._existing_ids(
                self.permissions, permission_ids or []
            )
            return self._hydrate_menu(menu)

    def get_menu(self, menu_id: int) -> Optional[Menu]:
        with self._data_lock:
            menu = self._live_get(self.menus, menu_id)
            return self._hydrate_menu(menu) if menu else None

    def get_menu_by_path(self, path: str) -> Optional[Menu]:
        with self._data_lock:
            for menu in self._live(self.menus):
                if menu.path == path:
                    return self._hydrate_menu(menu)
            return None

    def list_menus(
        self,
        *,
        status: Optional[str] = None,
        hidden: Optional[bool] = None,
        menu_type: Optional[str] = None,
    ) -> List[Menu]:
        with self._data_lock:
            menus = [
                m
                for m in self._live(self.menus)
                if (status is None or m.status == status)
                and (hidden is None or m.hidden == hidden)
                and (menu_type is None or m.type == menu_type)
            ]
            menus.sort(key=lambda m: (-m.sort, m.id))
            return [self._hydrate_menu(m) for m in menus]

    def list_menu_children(self, parent_id: int) -> List[Menu]:
        with self._data_lock:
            children = [m for m in self._live(self.menus) if m.parent_id == parent_id]
            children.sort(key=lambda m: (-m.sort, m.id))
            return [self._hydrate_menu(m) for m in children]

    def update_menu(
        self,
        menu_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields,
    ) -> Optional[Menu]:
        updates = filter_updates(fields, MENU_UPDATABLE)
        with self._data_lock:
            menu = self._live_get(self.menus, menu_id)
            if not menu:
                return None
            if "path" in updates:
                self._check_menu_path(updates["path"], skip_id=menu_id)
            for key, value in updates.items():
                setattr(menu, key, value)
            if permission_ids is not None:
                self.menu_permissions[menu_id] = self._existing_ids(
                    self.permissions, permission_ids
                )
            menu.updated_at = datetime.utcnow()
            return self._hydrate_menu(menu)

    def delete_menu(self, menu_id: int) -> bool:
        with self._data_lock:
            menu = self._live_get(self.menus, menu_id)
            if menu is None:
                return False
            menu.deleted_at = datetime.utcnow()
            self.menu_permissions.pop(menu_id, None)
            return True

    def close(self) -> None:
        return None
