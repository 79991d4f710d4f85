"""Administration services for user status and the role, permission and menu catalogs.

Permission and menu records form trees through ``parent_id``. Each node
also stores the comma-joined chain of ancestor ids ending in its own id
(``Permission.path`` / ``Menu.menu_path``); the chain is what cycle checks
walk and is rewritten for a whole subtree whenever a node is re-parented.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterable, List, Optional, TypeVar

from warden.logging import get_logger
from warden.service import permissions as perms
from warden.service.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    MENU_TYPE_BUTTON,
    MENU_TYPES,
    RECORD_STATUSES,
    STATUS_ACTIVE,
    USER_STATUSES,
    Menu,
    Permission,
    Role,
    User,
)

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int


@dataclass
class TreeNode(Generic[T]):
    node: T
    children: List["TreeNode[T]"] = field(default_factory=list)


def build_tree(nodes: Iterable[Any], parent_id: Optional[int] = None) -> List[TreeNode]:
    """Nest ``nodes`` by ``parent_id``, keeping the input order among siblings.

    Nodes whose parent is not part of ``nodes`` are dropped.
    """
    by_parent: Dict[Optional[int], List[Any]] = {}
    for node in nodes:
        by_parent.setdefault(node.parent_id, []).append(node)

    def attach(pid: Optional[int]) -> List[TreeNode]:
        return [TreeNode(node, attach(node.id)) for node in by_parent.get(pid, [])]

    return attach(parent_id)


def paginate(items: List[T], page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Page[T]:
    page = max(1, int(page or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit or DEFAULT_PAGE_SIZE)))
    start = (page - 1) * limit
    return Page(items=items[start : start + limit], total=len(items), page=page, limit=limit)


def _contains(value: Optional[str], needle: Optional[str]) -> bool:
    return not needle or (value is not None and needle in value)


def _chain(parent_chain: Optional[str], parent_id: Optional[int], node_id: int) -> str:
    if parent_id is None:
        return str(node_id)
    prefix = parent_chain or str(parent_id)
    return f"{prefix},{node_id}"


def _in_chain(node_id: int, chain: Optional[str]) -> bool:
    if not chain:
        return False
    return str(node_id) in chain.split(",")


def _check_status(status: Optional[str]) -> None:
    if status is not None and status not in RECORD_STATUSES:
        raise ValidationError(
            f"invalid status: {status}", detail={"allowed": list(RECORD_STATUSES)}
        )


def _conflict(exc: ConstraintViolation) -> ConflictError:
    return ConflictError(exc.message, detail=exc.detail)


class UserService:
    """Account status administration. Banned and inactive users fail the gate."""

    def __init__(self, store) -> None:
        self.store = store
        self.logger = logger

    @staticmethod
    def _check_user_status(status: str) -> None:
        if status not in USER_STATUSES:
            raise ValidationError(
                f"invalid status: {status}", detail={"allowed": list(USER_STATUSES)}
            )

    async def update_status(self, user_id: int, status: str) -> User:
        self._check_user_status(status)
        user = await asyncio.to_thread(self.store.set_user_status, user_id, status)
        if not user:
            raise NotFoundError(f"user {user_id} not found", detail={"user_id": user_id})
        self.logger.info("user_status_changed", user_id=user_id, status=status)
        return user

    async def batch_update_status(self, user_ids: Iterable[int], status: str) -> List[int]:
        """Apply ``status`` to every user; nothing changes if any id is unknown."""
        self._check_user_status(status)
        wanted = list(dict.fromkeys(user_ids))
        missing = []
        for user_id in wanted:
            if not await asyncio.to_thread(self.store.get_user, user_id):
                missing.append(user_id)
        if missing:
            raise NotFoundError("some users do not exist", detail={"missing": missing})
        for user_id in wanted:
            await asyncio.to_thread(self.store.set_user_status, user_id, status)
        self.logger.info("user_status_batch_changed", user_ids=wanted, status=status)
        return wanted


class RoleService:
    def __init__(self, store) -> None:
        self.store = store
        self.logger = logger

    async def _require(self, role_id: int) -> Role:
        role = await asyncio.to_thread(self.store.get_role, role_id)
        if not role:
            raise NotFoundError(f"role {role_id} not found", detail={"role_id": role_id})
        return role

    async def _require_user(self, user_id: int) -> User:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if not user:
            raise NotFoundError(f"user {user_id} not found", detail={"user_id": user_id})
        return user

    async def _require_permission_ids(self, permission_ids: Iterable[int]) -> List[int]:
        wanted = list(dict.fromkeys(permission_ids))
        found = await asyncio.to_thread(self.store.get_permissions, wanted)
        if len(found) != len(wanted):
            missing = sorted(set(wanted) - {p.id for p in found})
            raise NotFoundError("some permissions do not exist", detail={"missing": missing})
        return wanted

    async def _require_role_ids(self, role_ids: Iterable[int]) -> List[Role]:
        wanted = list(dict.fromkeys(role_ids))
        found = await asyncio.to_thread(self.store.get_roles, wanted)
        if len(found) != len(wanted):
            missing = sorted(set(wanted) - {r.id for r in found})
            raise NotFoundError("some roles do not exist", detail={"missing": missing})
        return found

    async def _require_users(self, user_ids: Iterable[int]) -> List[User]:
        users = []
        missing = []
        for user_id in dict.fromkeys(user_ids):
            user = await asyncio.to_thread(self.store.get_user, user_id)
            if user:
                users.append(user)
            else:
                missing.append(user_id)
        if missing:
            raise NotFoundError("some users do not exist", detail={"missing": missing})
        return users

    async def create(
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
        _check_status(status)
        if await asyncio.to_thread(self.store.get_role_by_code, code):
            raise ConflictError(f"role code {code} already exists", detail={"field": "code"})
        if await asyncio.to_thread(self.store.get_role_by_name, name):
            raise ConflictError(f"role name {name} already exists", detail={"field": "name"})
        ids = await self._require_permission_ids(permission_ids) if permission_ids else []
        try:
            role = await asyncio.to_thread(
                self.store.create_role,
                name,
                code,
                description=description,
                status=status,
                level=level,
                is_system=is_system,
                sort=sort,
                permission_ids=ids,
            )
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        self.logger.info("role_created", role_id=role.id, code=role.code)
        return role

    async def get(self, role_id: int) -> Role:
        return await self._require(role_id)

    async def get_by_code(self, code: str) -> Role:
        role = await asyncio.to_thread(self.store.get_role_by_code, code)
        if not role:
            raise NotFoundError(f"role code {code} not found", detail={"code": code})
        return role

    async def list(
        self,
        *,
        name: Optional[str] = None,
        code: Optional[str] = None,
        status: Optional[str] = None,
        is_system: Optional[bool] = None,
        min_level: Optional[int] = None,
        max_level: Optional[int] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[Role]:
        roles = await asyncio.to_thread(self.store.list_roles, status=status, is_system=is_system)
        matched = [
            r
            for r in roles
            if _contains(r.name, name)
            and _contains(r.code, code)
            and (min_level is None or r.level >= min_level)
            and (max_level is None or r.level <= max_level)
        ]
        return paginate(matched, page, limit)

    async def active_roles(self) -> List[Role]:
        roles = await asyncio.to_thread(self.store.list_roles, status=STATUS_ACTIVE)
        return sorted(roles, key=lambda r: (-r.level, -r.sort, r.id))

    async def update(
        self,
        role_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields: Any,
    ) -> Role:
        role = await self._require(role_id)
        if role.is_system and fields.get("is_system") is False:
            raise BadRequestError("cannot clear the system flag of a system role")
        _check_status(fields.get("status"))
        new_name = fields.get("name")
        if new_name and new_name != role.name:
            if await asyncio.to_thread(self.store.get_role_by_name, new_name):
                raise ConflictError(f"role name {new_name} already exists", detail={"field": "name"})
        new_code = fields.get("code")
        if new_code and new_code != role.code:
            if await asyncio.to_thread(self.store.get_role_by_code, new_code):
                raise ConflictError(f"role code {new_code} already exists", detail={"field": "code"})
        ids = None
        if permission_ids is not None:
            ids = await self._require_permission_ids(permission_ids) if permission_ids else []
        try:
            updated = await asyncio.to_thread(
                self.store.update_role, role_id, permission_ids=ids, **fields
            )
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        if not updated:
            raise NotFoundError(f"role {role_id} not found", detail={"role_id": role_id})
        self.logger.info("role_updated", role_id=role_id, fields=sorted(fields))
        return updated

    async def delete(self, role_id: int) -> None:
        role = await self._require(role_id)
        if role.is_system:
            raise BadRequestError("system roles cannot be deleted")
        holders = await asyncio.to_thread(self.store.list_user_ids_with_role, role_id)
        if holders:
            raise BadRequestError(
                "role is still assigned to users", detail={"user_count": len(holders)}
            )
        await asyncio.to_thread(self.store.delete_role, role_id)
        self.logger.info("role_deleted", role_id=role_id, code=role.code)

    async def role_users(self, role_id: int) -> List[User]:
        await self._require(role_id)
        user_ids = await asyncio.to_thread(self.store.list_user_ids_with_role, role_id)
        users = []
        for user_id in user_ids:
            user = await asyncio.to_thread(self.store.get_user, user_id)
            if user:
                users.append(user)
        return users

    async def assign_to_user(self, user_id: int, role_ids: Iterable[int]) -> User:
        """Add roles to a user, keeping existing memberships and their order."""
        user = await self._require_user(user_id)
        roles = await self._require_role_ids(role_ids)
        merged = [r.id for r in user.roles]
        merged.extend(r.id for r in roles if r.id not in merged)
        updated = await asyncio.to_thread(self.store.set_user_roles, user_id, merged)
        self.logger.info("roles_assigned", user_id=user_id, role_ids=[r.id for r in roles])
        return updated or user

    async def assign_role_to_users(self, role_id: int, user_ids: Iterable[int]) -> None:
        await self._require(role_id)
        users = await self._require_users(user_ids)
        for user in users:
            current = [r.id for r in user.roles]
            if role_id not in current:
                await asyncio.to_thread(self.store.set_user_roles, user.id, [*current, role_id])
        self.logger.info("role_assigned_to_users", role_id=role_id, user_ids=[u.id for u in users])

    async def revoke_from_user(self, user_id: int, role_ids: Iterable[int]) -> User:
        user = await self._require_user(user_id)
        revoked = set(role_ids)
        remaining = [r.id for r in user.roles if r.id not in revoked]
        updated = await asyncio.to_thread(self.store.set_user_roles, user_id, remaining)
        self.logger.info("roles_revoked", user_id=user_id, role_ids=sorted(revoked))
        return updated or user

    async def revoke_role_from_users(self, role_id: int, user_ids: Iterable[int]) -> None:
        users = await self._require_users(user_ids)
        for user in users:
            remaining = [r.id for r in user.roles if r.id != role_id]
            await asyncio.to_thread(self.store.set_user_roles, user.id, remaining)
        self.logger.info("role_revoked_from_users", role_id=role_id, user_ids=[u.id for u in users])

    async def set_permissions(self, role_id: int, permission_ids: Iterable[int]) -> Role:
        await self._require(role_id)
        permission_ids = list(permission_ids)
        ids = await self._require_permission_ids(permission_ids) if permission_ids else []
        updated = await asyncio.to_thread(self.store.update_role, role_id, permission_ids=ids)
        if not updated:
            raise NotFoundError(f"role {role_id} not found", detail={"role_id": role_id})
        self.logger.info("role_permissions_set", role_id=role_id, permission_ids=ids)
        return updated

    async def role_permissions(self, role_id: int) -> List[Permission]:
        role = await self._require(role_id)
        return list(role.permissions)


class PermissionCatalog:
    def __init__(self, store) -> None:
        self.store = store
        self.logger = logger

    async def _require(self, permission_id: int) -> Permission:
        permission = await asyncio.to_thread(self.store.get_permission, permission_id)
        if not permission:
            raise NotFoundError(
                f"permission {permission_id} not found", detail={"permission_id": permission_id}
            )
        return permission

    async def _require_parent(self, parent_id: int) -> Permission:
        parent = await asyncio.to_thread(self.store.get_permission, parent_id)
        if not parent:
            raise NotFoundError(
                f"parent permission {parent_id} not found", detail={"parent_id": parent_id}
            )
        return parent

    async def _rewrite_paths(self, node: Permission) -> None:
        """Recompute ``path`` for ``node``'s subtree from its stored chain."""
        children = await asyncio.to_thread(self.store.list_permission_children, node.id)
        for child in children:
            chain = _chain(node.path, node.id, child.id)
            child = await asyncio.to_thread(self.store.update_permission, child.id, path=chain)
            if child:
                await self._rewrite_paths(child)

    async def create(
        self,
        name: str,
        module: str,
        action: str,
        *,
        code: Optional[str] = None,
        description: Optional[str] = None,
        resource: Optional[str] = None,
        status: str = STATUS_ACTIVE,
        level: int = 0,
        is_system: bool = False,
        sort: int = 0,
        parent_id: Optional[int] = None,
    ) -> Permission:
        code = perms.validate_code(code) if code else perms.generate_code(module, action)
        _check_status(status)
        if await asyncio.to_thread(self.store.find_permission_by_code, code):
            raise ConflictError(f"permission code {code} already exists", detail={"field": "code"})
        parent = await self._require_parent(parent_id) if parent_id is not None else None
        try:
            permission = await asyncio.to_thread(
                self.store.create_permission,
                name,
                code,
                module,
                action,
                description=description,
                resource=resource,
                status=status,
                level=level,
                is_system=is_system,
                sort=sort,
                parent_id=parent_id,
            )
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        chain = _chain(parent.path if parent else None, parent_id, permission.id)
        permission = await asyncio.to_thread(
            self.store.update_permission, permission.id, path=chain
        ) or permission
        self.logger.info("permission_created", permission_id=permission.id, code=code)
        return permission

    async def get(self, permission_id: int) -> Permission:
        return await self._require(permission_id)

    async def get_by_code(self, code: str) -> Permission:
        permission = await asyncio.to_thread(self.store.find_permission_by_code, code)
        if not permission:
            raise NotFoundError(f"permission {code} not found", detail={"code": code})
        return permission

    async def list(
        self,
        *,
        name: Optional[str] = None,
        code: Optional[str] = None,
        module: Optional[str] = None,
        action: Optional[str] = None,
        status: Optional[str] = None,
        parent_id: Optional[int] = None,
        is_system: Optional[bool] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[Permission]:
        found = await asyncio.to_thread(self.store.list_permissions, status=status, module=module)
        matched = [
            p
            for p in found
            if _contains(p.name, name)
            and _contains(p.code, code)
            and (action is None or p.action == action)
            and (parent_id is None or p.parent_id == parent_id)
            and (is_system is None or p.is_system == is_system)
        ]
        return paginate(matched, page, limit)

    async def update(self, permission_id: int, **fields: Any) -> Permission:
        permission = await self._require(permission_id)
        if permission.is_system and fields.get("is_system") is False:
            raise BadRequestError("cannot clear the system flag of a system permission")
        _check_status(fields.get("status"))
        new_code = fields.get("code")
        if new_code and new_code != permission.code:
            perms.validate_code(new_code)
            if await asyncio.to_thread(self.store.find_permission_by_code, new_code):
                raise ConflictError(
                    f"permission code {new_code} already exists", detail={"field": "code"}
                )

        reparent = "parent_id" in fields and fields["parent_id"] != permission.parent_id
        parent = None
        if reparent and fields["parent_id"] is not None:
            parent = await self._require_parent(fields["parent_id"])
            if parent.id == permission_id or _in_chain(permission_id, parent.path):
                raise BadRequestError(
                    "a permission cannot be moved under itself or its descendants"
                )
        if reparent:
            fields["path"] = _chain(parent.path if parent else None, fields["parent_id"], permission_id)

        try:
            updated = await asyncio.to_thread(self.store.update_permission, permission_id, **fields)
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        if not updated:
            raise NotFoundError(
                f"permission {permission_id} not found", detail={"permission_id": permission_id}
            )
        if reparent:
            await self._rewrite_paths(updated)
        self.logger.info("permission_updated", permission_id=permission_id, fields=sorted(fields))
        return updated

    async def delete(self, permission_id: int) -> None:
        permission = await self._require(permission_id)
        if permission.is_system:
            raise BadRequestError("system permissions cannot be deleted")
        children = await asyncio.to_thread(self.store.list_permission_children, permission_id)
        if children:
            raise BadRequestError(
                "permission has child permissions", detail={"child_count": len(children)}
            )
        await asyncio.to_thread(self.store.delete_permission, permission_id)
        self.logger.info("permission_deleted", permission_id=permission_id, code=permission.code)

    async def tree(self) -> List[TreeNode[Permission]]:
        active = await asyncio.to_thread(self.store.list_permissions, status=STATUS_ACTIVE)
        return build_tree(active)


class MenuService:
    def __init__(self, store) -> None:
        self.store = store
        self.logger = logger

    async def _require(self, menu_id: int) -> Menu:
        menu = await asyncio.to_thread(self.store.get_menu, menu_id)
        if not menu:
            raise NotFoundError(f"menu {menu_id} not found", detail={"menu_id": menu_id})
        return menu

    async def _require_parent(self, parent_id: int) -> Menu:
        parent = await asyncio.to_thread(self.store.get_menu, parent_id)
        if not parent:
            raise BadRequestError("parent menu does not exist", detail={"parent_id": parent_id})
        if parent.type == MENU_TYPE_BUTTON:
            raise BadRequestError("button menus cannot have children", detail={"parent_id": parent_id})
        return parent

    @staticmethod
    def _check_fields(fields: Dict[str, Any]) -> None:
        _check_status(fields.get("status"))
        menu_type = fields.get("type")
        if menu_type is not None and menu_type not in MENU_TYPES:
            raise ValidationError(
                f"invalid menu type: {menu_type}", detail={"allowed": list(MENU_TYPES)}
            )

    async def _rewrite_paths(self, node: Menu) -> None:
        children = await asyncio.to_thread(self.store.list_menu_children, node.id)
        for child in children:
            chain = _chain(node.menu_path, node.id, child.id)
            child = await asyncio.to_thread(self.store.update_menu, child.id, menu_path=chain)
            if child:
                await self._rewrite_paths(child)

    async def create(
        self,
        name: str,
        title: str,
        path: str,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields: Any,
    ) -> Menu:
        self._check_fields(fields)
        if await asyncio.to_thread(self.store.get_menu_by_path, path):
            raise ConflictError("menu path already exists", detail={"field": "path"})
        parent_id = fields.get("parent_id")
        parent = await self._require_parent(parent_id) if parent_id is not None else None
        try:
            menu = await asyncio.to_thread(
                self.store.create_menu,
                name,
                title,
                path,
                permission_ids=list(permission_ids or []),
                **fields,
            )
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        chain = _chain(parent.menu_path if parent else None, parent_id, menu.id)
        menu = await asyncio.to_thread(self.store.update_menu, menu.id, menu_path=chain) or menu
        self.logger.info("menu_created", menu_id=menu.id, path=path)
        return menu

    async def get(self, menu_id: int) -> Menu:
        return await self._require(menu_id)

    async def list(
        self,
        *,
        name: Optional[str] = None,
        title: Optional[str] = None,
        path: Optional[str] = None,
        menu_type: Optional[str] = None,
        status: Optional[str] = None,
        hidden: Optional[bool] = None,
        parent_id: Optional[int] = None,
        is_system: Optional[bool] = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page[Menu]:
        found = await asyncio.to_thread(
            self.store.list_menus, status=status, hidden=hidden, menu_type=menu_type
        )
        matched = [
            m
            for m in found
            if _contains(m.name, name)
            and _contains(m.title, title)
            and _contains(m.path, path)
            and (parent_id is None or m.parent_id == parent_id)
            and (is_system is None or m.is_system == is_system)
        ]
        return paginate(matched, page, limit)

    async def update(
        self,
        menu_id: int,
        *,
        permission_ids: Optional[Iterable[int]] = None,
        **fields: Any,
    ) -> Menu:
        menu = await self._require(menu_id)
        self._check_fields(fields)
        new_path = fields.get("path")
        if new_path and new_path != menu.path:
            existing = await asyncio.to_thread(self.store.get_menu_by_path, new_path)
            if existing and existing.id != menu_id:
                raise ConflictError("menu path already exists", detail={"field": "path"})

        reparent = "parent_id" in fields and fields["parent_id"] != menu.parent_id
        parent = None
        if reparent and fields["parent_id"] is not None:
            candidate = fields["parent_id"]
            if candidate == menu_id:
                raise BadRequestError("a menu cannot be moved under itself or its descendants")
            parent = await self._require_parent(candidate)
            if _in_chain(menu_id, parent.menu_path):
                raise BadRequestError("a menu cannot be moved under itself or its descendants")
        if reparent:
            fields["menu_path"] = _chain(
                parent.menu_path if parent else None, fields["parent_id"], menu_id
            )

        ids = list(permission_ids) if permission_ids is not None else None
        try:
            updated = await asyncio.to_thread(
                self.store.update_menu, menu_id, permission_ids=ids, **fields
            )
        except ConstraintViolation as exc:
            raise _conflict(exc) from exc
        if not updated:
            raise NotFoundError(f"menu {menu_id} not found", detail={"menu_id": menu_id})
        if reparent:
            await self._rewrite_paths(updated)
        self.logger.info("menu_updated", menu_id=menu_id, fields=sorted(fields))
        return updated

    async def delete(self, menu_id: int) -> None:
        menu = await self._require(menu_id)
        if menu.is_system:
            raise BadRequestError("system menus cannot be deleted")
        children = await asyncio.to_thread(self.store.list_menu_children, menu_id)
        if children:
            raise BadRequestError("menu has child menus", detail={"child_count": len(children)})
        await asyncio.to_thread(self.store.delete_menu, menu_id)
        self.logger.info("menu_deleted", menu_id=menu_id, path=menu.path)

    async def tree(self) -> List[TreeNode[Menu]]:
        active = await asyncio.to_thread(self.store.list_menus, status=STATUS_ACTIVE)
        return build_tree(active)

    async def user_menu_tree(self, user: User) -> List[TreeNode[Menu]]:
        """Visible menus: no linked permissions, or the user holds any linked code."""
        menus = await asyncio.to_thread(
            self.store.list_menus, status=STATUS_ACTIVE, hidden=False
        )
        if perms.is_super_admin(user):
            return build_tree(menus)
        held = set(perms.get_user_permissions(user))
        visible = [
            m for m in menus if not m.permissions or any(p.code in held for p in m.permissions)
        ]
        return build_tree(visible)
