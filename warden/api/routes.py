from __future__ import annotations

from typing import Any, List, Optional, Type

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from warden.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MenuCreateRequest,
    MenuResponse,
    MenuTreeNode,
    MenuUpdateRequest,
    PageResponse,
    PermissionCreateRequest,
    PermissionResponse,
    PermissionTreeNode,
    PermissionUpdateRequest,
    RegisterRequest,
    RoleAssignRequest,
    RoleCreateRequest,
    RolePermissionsRequest,
    RoleResponse,
    RoleUpdateRequest,
    RoleUsersRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserBatchStatusRequest,
    UserPermissionsResponse,
    UserResponse,
    UserStatusRequest,
)
from warden.logging import get_logger
from warden.service import permissions as perms
from warden.service.auth import AuthResult, RegisterInput
from warden.service.catalog import Page, TreeNode
from warden.service.errors import NotFoundError
from warden.service.requirements import (
    RequirementRegistry,
    require_admin,
    require_any_permission,
    require_dynamic_resource,
    require_module,
    require_permission,
    require_resource,
)
from warden.service.runtime import get_runtime
from warden.storage.models import User

logger = get_logger(__name__)

router = APIRouter()
registry = RequirementRegistry()


async def get_principal(authorization: Optional[str] = Header(None)) -> User:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def guarded(operation_id: str):
    """Dependency that authenticates and then enforces ``operation_id``'s requirements."""
    return Depends(registry.requires(operation_id, get_principal, lambda: get_runtime().gate))


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_to_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
    )


def _page(page: Page, model: Type[BaseModel]) -> PageResponse:
    return PageResponse(
        items=[model.model_validate(item) for item in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
    )


def _tree(nodes: List[TreeNode], model: Type[BaseModel]) -> List[Any]:
    return [
        model.model_validate(n.node).model_copy(update={"children": _tree(n.children, model)})
        for n in nodes
    ]


# -- auth ---------------------------------------------------------------------

AUTH_REGISTER = registry.mark_public("auth.register")
AUTH_LOGIN = registry.mark_public("auth.login")
AUTH_REFRESH = registry.mark_public("auth.refresh")
AUTH_LOGOUT = registry.register("auth.logout")
AUTH_PROFILE = registry.register("auth.profile")
AUTH_PERMISSIONS = registry.register("auth.permissions")
AUTH_MENUS = registry.register("auth.menus")


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    operation_id=AUTH_REGISTER,
)
async def register(body: RegisterRequest, request: Request):
    """Create an account and open its first session.

    Raises:
        409: If the username, email or phone is already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        RegisterInput(
            username=body.username,
            password=body.password,
            email=body.email,
            phone=body.phone,
            nickname=body.nickname,
        ),
        _client_ip(request),
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"], operation_id=AUTH_LOGIN)
async def login(body: LoginRequest, request: Request):
    """Authenticate by username, email or phone.

    A successful login replaces any session the user already had.

    Raises:
        401: If the credentials are wrong or the account is disabled
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, _client_ip(request))
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"], operation_id=AUTH_REFRESH)
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse.model_validate(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"], operation_id=AUTH_LOGOUT)
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: User = guarded(AUTH_LOGOUT),
):
    runtime = get_runtime()
    access_token = runtime.auth.extract_bearer(authorization) or ""
    refresh_token = body.refresh_token if body else None
    await runtime.auth.logout(principal.id, access_token, refresh_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/auth/profile", response_model=Envelope, tags=["auth"], operation_id=AUTH_PROFILE)
async def profile(principal: User = guarded(AUTH_PROFILE)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.get(
    "/auth/permissions", response_model=Envelope, tags=["auth"], operation_id=AUTH_PERMISSIONS
)
async def my_permissions(principal: User = guarded(AUTH_PERMISSIONS)):
    """Permission codes currently granted to the caller, checked against the store."""
    runtime = get_runtime()
    codes = await runtime.engine.get_user_dynamic_permissions(principal)
    return Envelope(
        status="ok",
        data=UserPermissionsResponse(
            user_id=principal.id,
            permissions=codes,
            is_super_admin=perms.is_super_admin(principal),
        ),
    )


@router.get("/auth/menus", response_model=Envelope, tags=["auth"], operation_id=AUTH_MENUS)
async def my_menus(principal: User = guarded(AUTH_MENUS)):
    runtime = get_runtime()
    tree = await runtime.menus.user_menu_tree(principal)
    return Envelope(status="ok", data=_tree(tree, MenuTreeNode))


# -- users --------------------------------------------------------------------

USERS_STATUS = registry.register("users.status", require_permission("user:update"))
USERS_BATCH_STATUS = registry.register("users.batch_status", require_permission("user:update"))


@router.patch(
    "/users/batch/status",
    response_model=Envelope,
    tags=["users"],
    operation_id=USERS_BATCH_STATUS,
)
async def batch_update_user_status(
    body: UserBatchStatusRequest, principal: User = guarded(USERS_BATCH_STATUS)
):
    runtime = get_runtime()
    ids = await runtime.users.batch_update_status(body.ids, body.status)
    return Envelope(status="ok", data={"user_ids": ids, "status": body.status})


@router.patch(
    "/users/{user_id}/status",
    response_model=Envelope,
    tags=["users"],
    operation_id=USERS_STATUS,
)
async def update_user_status(
    user_id: int, body: UserStatusRequest, principal: User = guarded(USERS_STATUS)
):
    """Activate, deactivate or ban an account.

    Raises:
        404: If the user does not exist
    """
    runtime = get_runtime()
    user = await runtime.users.update_status(user_id, body.status)
    return Envelope(status="ok", data=_user_to_response(user))


# -- roles --------------------------------------------------------------------

ROLES_CREATE = registry.register("roles.create", require_permission("role:create"))
ROLES_LIST = registry.register("roles.list", require_permission("role:read"))
ROLES_ACTIVE = registry.register("roles.active", require_permission("role:read", dynamic=False))
ROLES_BY_CODE = registry.register("roles.by_code", require_permission("role:read"))
ROLES_GET = registry.register("roles.get", require_resource("read"))
ROLES_UPDATE = registry.register("roles.update", require_permission("role:update"))
ROLES_DELETE = registry.register("roles.delete", require_permission("role:delete"))
ROLES_ASSIGN = registry.register("roles.assign", require_any_permission("role:update", "role:manage"))
ROLES_REVOKE = registry.register("roles.revoke", require_any_permission("role:update", "role:manage"))
ROLES_USERS = registry.register(
    "roles.users",
    require_dynamic_resource("/api/roles/:role_id/users", "read", resource_param="role_id"),
)
ROLES_USERS_ASSIGN = registry.register(
    "roles.users_assign", require_any_permission("role:update", "role:manage")
)
ROLES_USERS_REVOKE = registry.register(
    "roles.users_revoke", require_any_permission("role:update", "role:manage")
)
ROLES_SET_PERMISSIONS = registry.register(
    "roles.set_permissions", require_any_permission("role:update", "role:manage")
)
ROLES_PERMISSIONS = registry.register("roles.permissions", require_permission("role:read"))


@router.post(
    "/roles", response_model=Envelope, status_code=201, tags=["roles"], operation_id=ROLES_CREATE
)
async def create_role(body: RoleCreateRequest, principal: User = guarded(ROLES_CREATE)):
    runtime = get_runtime()
    role = await runtime.roles.create(
        body.name,
        body.code,
        description=body.description,
        status=body.status,
        level=body.level,
        is_system=body.is_system,
        sort=body.sort,
        permission_ids=body.permission_ids,
    )
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.get("/roles", response_model=Envelope, tags=["roles"], operation_id=ROLES_LIST)
async def list_roles(
    name: Optional[str] = None,
    code: Optional[str] = None,
    status: Optional[str] = None,
    is_system: Optional[bool] = None,
    min_level: Optional[int] = Query(None, ge=0),
    max_level: Optional[int] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: User = guarded(ROLES_LIST),
):
    runtime = get_runtime()
    result = await runtime.roles.list(
        name=name,
        code=code,
        status=status,
        is_system=is_system,
        min_level=min_level,
        max_level=max_level,
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=_page(result, RoleResponse))


@router.post("/roles/assign", response_model=Envelope, tags=["roles"], operation_id=ROLES_ASSIGN)
async def assign_roles(body: RoleAssignRequest, principal: User = guarded(ROLES_ASSIGN)):
    runtime = get_runtime()
    users = [await runtime.roles.assign_to_user(uid, body.role_ids) for uid in body.user_ids]
    return Envelope(status="ok", data=[_user_to_response(u) for u in users])


@router.post("/roles/revoke", response_model=Envelope, tags=["roles"], operation_id=ROLES_REVOKE)
async def revoke_roles(body: RoleAssignRequest, principal: User = guarded(ROLES_REVOKE)):
    runtime = get_runtime()
    users = [await runtime.roles.revoke_from_user(uid, body.role_ids) for uid in body.user_ids]
    return Envelope(status="ok", data=[_user_to_response(u) for u in users])


@router.get("/roles/active", response_model=Envelope, tags=["roles"], operation_id=ROLES_ACTIVE)
async def active_roles(principal: User = guarded(ROLES_ACTIVE)):
    runtime = get_runtime()
    roles = await runtime.roles.active_roles()
    return Envelope(status="ok", data=[RoleResponse.model_validate(r) for r in roles])


@router.get(
    "/roles/code/{code}", response_model=Envelope, tags=["roles"], operation_id=ROLES_BY_CODE
)
async def role_by_code(code: str, principal: User = guarded(ROLES_BY_CODE)):
    runtime = get_runtime()
    role = await runtime.roles.get_by_code(code)
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"], operation_id=ROLES_GET)
async def get_role(role_id: int, principal: User = guarded(ROLES_GET)):
    runtime = get_runtime()
    role = await runtime.roles.get(role_id)
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.patch(
    "/roles/{role_id}", response_model=Envelope, tags=["roles"], operation_id=ROLES_UPDATE
)
async def update_role(
    role_id: int, body: RoleUpdateRequest, principal: User = guarded(ROLES_UPDATE)
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    permission_ids = fields.pop("permission_ids", None)
    role = await runtime.roles.update(role_id, permission_ids=permission_ids, **fields)
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.delete(
    "/roles/{role_id}", response_model=Envelope, tags=["roles"], operation_id=ROLES_DELETE
)
async def delete_role(role_id: int, principal: User = guarded(ROLES_DELETE)):
    runtime = get_runtime()
    await runtime.roles.delete(role_id)
    return Envelope(status="ok", data={"deleted": True, "role_id": role_id})


@router.get(
    "/roles/{role_id}/users", response_model=Envelope, tags=["roles"], operation_id=ROLES_USERS
)
async def role_users(role_id: int, principal: User = guarded(ROLES_USERS)):
    runtime = get_runtime()
    users = await runtime.roles.role_users(role_id)
    return Envelope(status="ok", data=[_user_to_response(u) for u in users])


@router.post(
    "/roles/{role_id}/users/assign",
    response_model=Envelope,
    tags=["roles"],
    operation_id=ROLES_USERS_ASSIGN,
)
async def assign_role_users(
    role_id: int, body: RoleUsersRequest, principal: User = guarded(ROLES_USERS_ASSIGN)
):
    runtime = get_runtime()
    await runtime.roles.assign_role_to_users(role_id, body.user_ids)
    return Envelope(status="ok", data={"role_id": role_id, "user_ids": body.user_ids})


@router.post(
    "/roles/{role_id}/users/revoke",
    response_model=Envelope,
    tags=["roles"],
    operation_id=ROLES_USERS_REVOKE,
)
async def revoke_role_users(
    role_id: int, body: RoleUsersRequest, principal: User = guarded(ROLES_USERS_REVOKE)
):
    runtime = get_runtime()
    await runtime.roles.revoke_role_from_users(role_id, body.user_ids)
    return Envelope(status="ok", data={"role_id": role_id, "user_ids": body.user_ids})


@router.post(
    "/roles/{role_id}/permissions",
    response_model=Envelope,
    tags=["roles"],
    operation_id=ROLES_SET_PERMISSIONS,
)
async def set_role_permissions(
    role_id: int, body: RolePermissionsRequest, principal: User = guarded(ROLES_SET_PERMISSIONS)
):
    runtime = get_runtime()
    role = await runtime.roles.set_permissions(role_id, body.permission_ids)
    return Envelope(status="ok", data=RoleResponse.model_validate(role))


@router.get(
    "/roles/{role_id}/permissions",
    response_model=Envelope,
    tags=["roles"],
    operation_id=ROLES_PERMISSIONS,
)
async def role_permissions(role_id: int, principal: User = guarded(ROLES_PERMISSIONS)):
    runtime = get_runtime()
    items = await runtime.roles.role_permissions(role_id)
    return Envelope(status="ok", data=[PermissionResponse.model_validate(p) for p in items])


# -- permissions --------------------------------------------------------------

PERMISSIONS_CREATE = registry.register("permissions.create", require_permission("permission:create"))
PERMISSIONS_LIST = registry.register("permissions.list", require_permission("permission:read"))
PERMISSIONS_TREE = registry.register("permissions.tree", require_permission("permission:read"))
PERMISSIONS_BY_CODE = registry.register("permissions.by_code", require_permission("permission:read"))
PERMISSIONS_GET = registry.register("permissions.get", require_permission("permission:read"))
PERMISSIONS_UPDATE = registry.register("permissions.update", require_permission("permission:update"))
PERMISSIONS_DELETE = registry.register("permissions.delete", require_permission("permission:delete"))
PERMISSIONS_DISABLE = registry.register("permissions.disable", require_admin())
PERMISSIONS_ENABLE = registry.register("permissions.enable", require_admin())


@router.post(
    "/permissions",
    response_model=Envelope,
    status_code=201,
    tags=["permissions"],
    operation_id=PERMISSIONS_CREATE,
)
async def create_permission(
    body: PermissionCreateRequest, principal: User = guarded(PERMISSIONS_CREATE)
):
    runtime = get_runtime()
    fields = body.model_dump(exclude={"name", "module", "action"})
    permission = await runtime.permissions.create(body.name, body.module, body.action, **fields)
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.get(
    "/permissions", response_model=Envelope, tags=["permissions"], operation_id=PERMISSIONS_LIST
)
async def list_permissions(
    name: Optional[str] = None,
    code: Optional[str] = None,
    module: Optional[str] = None,
    action: Optional[str] = None,
    status: Optional[str] = None,
    parent_id: Optional[int] = None,
    is_system: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: User = guarded(PERMISSIONS_LIST),
):
    runtime = get_runtime()
    result = await runtime.permissions.list(
        name=name,
        code=code,
        module=module,
        action=action,
        status=status,
        parent_id=parent_id,
        is_system=is_system,
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=_page(result, PermissionResponse))


@router.get(
    "/permissions/tree",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_TREE,
)
async def permission_tree(principal: User = guarded(PERMISSIONS_TREE)):
    runtime = get_runtime()
    tree = await runtime.permissions.tree()
    return Envelope(status="ok", data=_tree(tree, PermissionTreeNode))


@router.get(
    "/permissions/code/{code}",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_BY_CODE,
)
async def permission_by_code(code: str, principal: User = guarded(PERMISSIONS_BY_CODE)):
    runtime = get_runtime()
    permission = await runtime.permissions.get_by_code(code)
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.post(
    "/permissions/{code}/disable",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_DISABLE,
)
async def disable_permission(code: str, principal: User = guarded(PERMISSIONS_DISABLE)):
    """Turn a permission off for every holder without touching role assignments."""
    runtime = get_runtime()
    if not await runtime.engine.disable_permission(code):
        raise NotFoundError(f"permission {code} not found", detail={"code": code})
    return Envelope(status="ok", data={"code": code, "status": "inactive"})


@router.post(
    "/permissions/{code}/enable",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_ENABLE,
)
async def enable_permission(code: str, principal: User = guarded(PERMISSIONS_ENABLE)):
    runtime = get_runtime()
    if not await runtime.engine.enable_permission(code):
        raise NotFoundError(f"permission {code} not found", detail={"code": code})
    return Envelope(status="ok", data={"code": code, "status": "active"})


@router.get(
    "/permissions/{permission_id}",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_GET,
)
async def get_permission(permission_id: int, principal: User = guarded(PERMISSIONS_GET)):
    runtime = get_runtime()
    permission = await runtime.permissions.get(permission_id)
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.patch(
    "/permissions/{permission_id}",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_UPDATE,
)
async def update_permission(
    permission_id: int,
    body: PermissionUpdateRequest,
    principal: User = guarded(PERMISSIONS_UPDATE),
):
    runtime = get_runtime()
    permission = await runtime.permissions.update(
        permission_id, **body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=PermissionResponse.model_validate(permission))


@router.delete(
    "/permissions/{permission_id}",
    response_model=Envelope,
    tags=["permissions"],
    operation_id=PERMISSIONS_DELETE,
)
async def delete_permission(permission_id: int, principal: User = guarded(PERMISSIONS_DELETE)):
    runtime = get_runtime()
    await runtime.permissions.delete(permission_id)
    return Envelope(status="ok", data={"deleted": True, "permission_id": permission_id})


# -- menus --------------------------------------------------------------------

MENUS_CREATE = registry.register("menus.create", require_module("menu", "create"))
MENUS_LIST = registry.register("menus.list", require_module("menu", "read"))
MENUS_TREE = registry.register("menus.tree", require_module("menu", "read"))
MENUS_GET = registry.register("menus.get", require_module("menu", "read"))
MENUS_UPDATE = registry.register("menus.update", require_module("menu", "update"))
MENUS_DELETE = registry.register("menus.delete", require_module("menu", "delete"))
MENUS_USER_TREE = registry.register("menus.user_tree")


@router.post(
    "/menus", response_model=Envelope, status_code=201, tags=["menus"], operation_id=MENUS_CREATE
)
async def create_menu(body: MenuCreateRequest, principal: User = guarded(MENUS_CREATE)):
    runtime = get_runtime()
    fields = body.model_dump(exclude={"name", "title", "path", "permission_ids"})
    menu = await runtime.menus.create(
        body.name, body.title, body.path, permission_ids=body.permission_ids, **fields
    )
    return Envelope(status="ok", data=MenuResponse.model_validate(menu))


@router.get("/menus", response_model=Envelope, tags=["menus"], operation_id=MENUS_LIST)
async def list_menus(
    name: Optional[str] = None,
    title: Optional[str] = None,
    path: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    hidden: Optional[bool] = None,
    parent_id: Optional[int] = None,
    is_system: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    principal: User = guarded(MENUS_LIST),
):
    runtime = get_runtime()
    result = await runtime.menus.list(
        name=name,
        title=title,
        path=path,
        menu_type=type,
        status=status,
        hidden=hidden,
        parent_id=parent_id,
        is_system=is_system,
        page=page,
        limit=limit,
    )
    return Envelope(status="ok", data=_page(result, MenuResponse))


@router.get("/menus/tree", response_model=Envelope, tags=["menus"], operation_id=MENUS_TREE)
async def menu_tree(principal: User = guarded(MENUS_TREE)):
    runtime = get_runtime()
    tree = await runtime.menus.tree()
    return Envelope(status="ok", data=_tree(tree, MenuTreeNode))


@router.get(
    "/menus/user-tree", response_model=Envelope, tags=["menus"], operation_id=MENUS_USER_TREE
)
async def user_menu_tree(principal: User = guarded(MENUS_USER_TREE)):
    runtime = get_runtime()
    tree = await runtime.menus.user_menu_tree(principal)
    return Envelope(status="ok", data=_tree(tree, MenuTreeNode))


@router.get("/menus/{menu_id}", response_model=Envelope, tags=["menus"], operation_id=MENUS_GET)
async def get_menu(menu_id: int, principal: User = guarded(MENUS_GET)):
    runtime = get_runtime()
    menu = await runtime.menus.get(menu_id)
    return Envelope(status="ok", data=MenuResponse.model_validate(menu))


@router.patch(
    "/menus/{menu_id}", response_model=Envelope, tags=["menus"], operation_id=MENUS_UPDATE
)
async def update_menu(
    menu_id: int, body: MenuUpdateRequest, principal: User = guarded(MENUS_UPDATE)
):
    runtime = get_runtime()
    fields = body.model_dump(exclude_unset=True)
    permission_ids = fields.pop("permission_ids", None)
    menu = await runtime.menus.update(menu_id, permission_ids=permission_ids, **fields)
    return Envelope(status="ok", data=MenuResponse.model_validate(menu))


@router.delete(
    "/menus/{menu_id}", response_model=Envelope, tags=["menus"], operation_id=MENUS_DELETE
)
async def delete_menu(menu_id: int, principal: User = guarded(MENUS_DELETE)):
    runtime = get_runtime()
    await runtime.menus.delete(menu_id)
    return Envelope(status="ok", data={"deleted": True, "menu_id": menu_id})
