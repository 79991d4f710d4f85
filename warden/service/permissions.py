"""Permission resolution over a principal's loaded role/permission graph.

The module-level functions are pure: they only look at the roles and
permissions already attached to the ``User`` record. ``PermissionEngine``
adds the live-lookup ("dynamic") variants that re-check a permission's
status against the credential store on every call, so disabling a
permission takes effect without any cache invalidation.
"""

from __future__ import annotations

import asyncio
import re
from typing import Iterable, List, Optional, Protocol, Tuple

from warden.logging import get_logger
from warden.service.errors import ValidationError
from warden.storage.models import (
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    SUPER_ADMIN_ROLE_CODES,
    Permission,
    Role,
    User,
)

logger = get_logger(__name__)

PERMISSION_CODE_PATTERN = re.compile(r"^[a-zA-Z_]\w*:[a-zA-Z_]\w*$", re.ASCII)
RESOURCE_MODULE_PATTERN = re.compile(r"^/api/([^/]+)")


class PermissionStore(Protocol):
    def find_permission_by_code(
        self, code: str, status: Optional[str] = None
    ) -> Optional[Permission]: ...

    def find_permission_by_resource_action(
        self, resource: str, action: str, status: Optional[str] = None
    ) -> Optional[Permission]: ...

    def find_permissions_for_role_ids(
        self, role_ids: Iterable[int], status: Optional[str] = None
    ) -> List[Permission]: ...

    def create_permission(self, name: str, code: str, module: str, action: str, **kwargs) -> Permission: ...

    def update_permission(self, permission_id: int, **fields) -> Optional[Permission]: ...


def is_active(entity) -> bool:
    return entity is not None and getattr(entity, "status", None) == STATUS_ACTIVE


def active_roles(user: Optional[User]) -> List[Role]:
    if not user or not user.roles:
        return []
    return [role for role in user.roles if is_active(role)]


def is_super_admin(user: Optional[User]) -> bool:
    return any(role.code in SUPER_ADMIN_ROLE_CODES for role in active_roles(user))


def has_role(user: Optional[User], role_code: str) -> bool:
    return any(role.code == role_code for role in active_roles(user))


def has_any_role(user: Optional[User], role_codes: Iterable[str]) -> bool:
    wanted = set(role_codes)
    return any(role.code in wanted for role in active_roles(user))


def _holds_permission(user: Optional[User], code: str) -> bool:
    for role in active_roles(user):
        if any(p.code == code and is_active(p) for p in role.permissions):
            return True
    return False


def has_permission(user: Optional[User], code: str) -> bool:
    if not user:
        return False
    if is_super_admin(user):
        return True
    return _holds_permission(user, code)


def has_module_permission(user: Optional[User], module: str, action: str) -> bool:
    return has_permission(user, generate_code(module, action, validate=False))


def effective_max_level(user: Optional[User]) -> int:
    """Highest level across active roles and the permissions they carry."""
    max_level = 0
    for role in active_roles(user):
        max_level = max(max_level, role.level)
        for permission in role.permissions:
            max_level = max(max_level, permission.level)
    return max_level


def has_permission_level(user: Optional[User], required_level: int) -> bool:
    if not user:
        return False
    if is_super_admin(user):
        return True
    return effective_max_level(user) >= required_level


def resource_module(resource_path: str) -> Optional[str]:
    """``/api/users/42`` -> ``user``.

    Takes the first segment after ``/api/`` and drops one trailing ``s``.
    Irregular plurals and hyphenated segments are not normalised.
    """
    match = RESOURCE_MODULE_PATTERN.match(resource_path or "")
    if not match:
        return None
    module = match.group(1)
    if module.endswith("s"):
        return module[:-1]
    return module


def can_access_resource(user: Optional[User], resource_path: str, action: str) -> bool:
    if not user:
        return False
    if is_super_admin(user):
        return True
    module = resource_module(resource_path)
    if module:
        return has_module_permission(user, module, action)
    return False


def get_user_permissions(user: Optional[User]) -> List[str]:
    """Sorted, de-duplicated active permission codes reachable via active roles."""
    codes = {
        p.code for role in active_roles(user) for p in role.permissions if is_active(p)
    }
    return sorted(codes)


def get_user_module_permissions(user: Optional[User], module: str) -> List[str]:
    """Actions the user holds within ``module``."""
    actions = {
        p.action
        for role in active_roles(user)
        for p in role.permissions
        if is_active(p) and p.module == module
    }
    return sorted(actions)


def is_valid_code(code: str) -> bool:
    return isinstance(code, str) and PERMISSION_CODE_PATTERN.match(code) is not None


def validate_code(code: str) -> str:
    if not is_valid_code(code):
        raise ValidationError(
            "invalid permission code, expected module:action",
            detail={"code": code},
        )
    return code


def generate_code(module: str, action: str, *, validate: bool = True) -> str:
    code = f"{module}:{action}"
    return validate_code(code) if validate else code


def parse_code(code: str) -> Tuple[str, str]:
    validate_code(code)
    module, action = code.split(":", 1)
    return module, action


class PermissionEngine:
    """Permission checks that consult the credential store on every call."""

    def __init__(self, store: PermissionStore) -> None:
        self.store = store
        self.logger = logger

    async def is_permission_active(self, code: str) -> bool:
        permission = await asyncio.to_thread(
            self.store.find_permission_by_code, code, STATUS_ACTIVE
        )
        return permission is not None

    async def has_dynamic_permission(self, user: Optional[User], code: str) -> bool:
        if not user:
            return False
        if is_super_admin(user):
            return True
        if not await self.is_permission_active(code):
            return False
        return _holds_permission(user, code)

    async def has_dynamic_module_permission(
        self, user: Optional[User], module: str, action: str
    ) -> bool:
        return await self.has_dynamic_permission(
            user, generate_code(module, action, validate=False)
        )

    async def can_access_resource_dynamic(
        self, user: Optional[User], resource: str, action: str
    ) -> bool:
        if not user:
            return False
        if is_super_admin(user):
            return True
        exact = await asyncio.to_thread(
            self.store.find_permission_by_resource_action, resource, action, STATUS_ACTIVE
        )
        if exact is not None and _holds_permission(user, exact.code):
            return True
        module = resource_module(resource)
        if module:
            return await self.has_dynamic_module_permission(user, module, action)
        return False

    async def get_user_dynamic_permissions(self, user: Optional[User]) -> List[str]:
        """Codes granted through the user's roles that are still active in the store."""
        roles = active_roles(user)
        if not roles:
            return []
        permissions = await asyncio.to_thread(
            self.store.find_permissions_for_role_ids,
            [role.id for role in roles],
            STATUS_ACTIVE,
        )
        return sorted({p.code for p in permissions})

    async def create_dynamic_permission(
        self,
        module: str,
        action: str,
        name: str,
        *,
        description: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> Permission:
        """Create ``module:action`` at runtime, returning the existing record if present."""
        code = generate_code(module, action)
        existing = await asyncio.to_thread(self.store.find_permission_by_code, code)
        if existing:
            return existing
        permission = await asyncio.to_thread(
            self.store.create_permission,
            name,
            code,
            module,
            action,
            description=description,
            resource=resource,
            status=STATUS_ACTIVE,
            level=0,
            is_system=False,
        )
        path = str(permission.id)
        permission = await asyncio.to_thread(
            self.store.update_permission, permission.id, path=path
        ) or permission
        self.logger.info("dynamic_permission_created", code=code, permission_id=permission.id)
        return permission

    async def _set_status(self, code: str, status: str) -> bool:
        permission = await asyncio.to_thread(self.store.find_permission_by_code, code)
        if not permission:
            return False
        await asyncio.to_thread(self.store.update_permission, permission.id, status=status)
        self.logger.info("permission_status_changed", code=code, status=status)
        return True

    async def disable_permission(self, code: str) -> bool:
        return await self._set_status(code, STATUS_INACTIVE)

    async def enable_permission(self, code: str) -> bool:
        return await self._set_status(code, STATUS_ACTIVE)
