from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple, Union

from fastapi import Depends, Request

from warden.storage.models import SUPER_ADMIN_ROLE_CODES

OPERATOR_AND = "AND"
OPERATOR_OR = "OR"

_METHOD_ACTIONS = {
    "GET": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


@dataclass
class RequestContext:
    """What the gate needs to know about the inbound request."""

    method: str = "GET"
    path: str = ""
    params: Dict[str, str] = field(default_factory=dict)


CustomCheck = Callable[[Any, RequestContext], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class PermissionRequirement:
    """A single capability check.

    Evaluated in this order: ``custom_check``, resource check, ``code``,
    ``module`` + ``action``. ``dynamic`` requirements re-validate the
    permission's status against the credential store.
    """

    code: Optional[str] = None
    module: Optional[str] = None
    action: Optional[str] = None
    resource: Optional[str] = None
    check_resource: bool = False
    resource_param: Optional[str] = None
    custom_check: Optional[CustomCheck] = None
    dynamic: bool = True


@dataclass(frozen=True)
class PermissionSet:
    requirements: Tuple[PermissionRequirement, ...]
    operator: str = OPERATOR_AND

    def __post_init__(self) -> None:
        if self.operator not in (OPERATOR_AND, OPERATOR_OR):
            raise ValueError(f"unsupported operator: {self.operator}")


@dataclass(frozen=True)
class RoleRequirement:
    """Principal must hold any one of ``roles``."""

    roles: Tuple[str, ...]


@dataclass(frozen=True)
class LevelRequirement:
    level: int


Requirement = Union[PermissionRequirement, PermissionSet, RoleRequirement, LevelRequirement]


def require_permission(code: str, *, dynamic: bool = True) -> PermissionRequirement:
    return PermissionRequirement(code=code, dynamic=dynamic)


def require_module(module: str, action: str, *, dynamic: bool = True) -> PermissionRequirement:
    return PermissionRequirement(module=module, action=action, dynamic=dynamic)


def require_resource(
    action: Optional[str] = None, *, resource_param: Optional[str] = None
) -> PermissionRequirement:
    """Resource check against the request path using the loaded role graph."""
    return PermissionRequirement(
        action=action,
        check_resource=True,
        resource_param=resource_param,
        dynamic=False,
    )


def require_dynamic_resource(
    resource: str, action: Optional[str] = None, *, resource_param: Optional[str] = None
) -> PermissionRequirement:
    """Resource check against a ``:param`` template, resolved live in the store."""
    return PermissionRequirement(
        action=action,
        resource=resource,
        check_resource=True,
        resource_param=resource_param,
        dynamic=True,
    )


def require_custom(check: CustomCheck) -> PermissionRequirement:
    return PermissionRequirement(custom_check=check)


def require_all(*requirements: PermissionRequirement) -> PermissionSet:
    return PermissionSet(tuple(requirements), OPERATOR_AND)


def require_any(*requirements: PermissionRequirement) -> PermissionSet:
    return PermissionSet(tuple(requirements), OPERATOR_OR)


def require_any_permission(*codes: str) -> PermissionSet:
    """Static check passing when the principal holds any of ``codes``."""
    return require_any(*(require_permission(code, dynamic=False) for code in codes))


def require_roles(*roles: str) -> RoleRequirement:
    return RoleRequirement(tuple(roles))


def require_admin() -> RoleRequirement:
    return RoleRequirement(SUPER_ADMIN_ROLE_CODES)


def require_level(level: int) -> LevelRequirement:
    return LevelRequirement(level)


def action_from_method(method: Optional[str]) -> str:
    return _METHOD_ACTIONS.get((method or "").upper(), "read")


def substitute_params(template: str, params: Optional[Dict[str, Any]]) -> str:
    """Replace every ``:name`` placeholder with its captured route value."""
    resource = template
    for key, value in (params or {}).items():
        if value and isinstance(value, str):
            resource = resource.replace(f":{key}", value)
    return resource


def resolve_resource(
    requirement: PermissionRequirement,
    request_path: str,
    params: Optional[Dict[str, Any]] = None,
) -> str:
    """Template (or the raw request path) with route params filled in."""
    params = params or {}
    resource = requirement.resource or request_path
    if requirement.resource_param:
        value = params.get(requirement.resource_param)
        if value:
            resource = resource.replace(f":{requirement.resource_param}", str(value))
    return substitute_params(resource, params)


def describe(requirement: PermissionRequirement) -> str:
    if requirement.code:
        return requirement.code
    if requirement.module and requirement.action:
        return f"{requirement.module}:{requirement.action}"
    if requirement.check_resource:
        return f"resource access({requirement.action or 'read'})"
    return "unknown permission"


def describe_set(requirements: Union[PermissionRequirement, PermissionSet]) -> str:
    if isinstance(requirements, PermissionRequirement):
        return describe(requirements)
    separator = " and " if requirements.operator == OPERATOR_AND else " or "
    return separator.join(describe(r) for r in requirements.requirements)


class RequirementRegistry:
    """Side table mapping operation ids to the requirements guarding them."""

    def __init__(self) -> None:
        self._requirements: Dict[str, Tuple[Requirement, ...]] = {}
        self._public: set[str] = set()

    def register(self, operation_id: str, *requirements: Requirement) -> str:
        if operation_id in self._requirements or operation_id in self._public:
            raise ValueError(f"operation already registered: {operation_id}")
        self._requirements[operation_id] = tuple(requirements)
        return operation_id

    def mark_public(self, operation_id: str) -> str:
        if operation_id in self._requirements:
            raise ValueError(f"operation already guarded: {operation_id}")
        self._public.add(operation_id)
        return operation_id

    def is_public(self, operation_id: str) -> bool:
        return operation_id in self._public

    def get(self, operation_id: str) -> Tuple[Requirement, ...]:
        return self._requirements.get(operation_id, ())

    def operations(self) -> Iterable[str]:
        return sorted(set(self._requirements) | self._public)

    def requirement_for_route(self, route: Any) -> Tuple[Requirement, ...]:
        """Requirements for a mounted ``APIRoute`` looked up by its operation id."""
        operation_id = getattr(route, "operation_id", None) or getattr(route, "name", None)
        if not operation_id:
            return ()
        return self.get(operation_id)

    def requires(
        self,
        operation_id: str,
        principal_dependency: Callable[..., Any],
        gate_provider: Callable[[], Any],
    ) -> Callable[..., Awaitable[Any]]:
        """FastAPI dependency enforcing ``operation_id``'s requirements.

        Resolves the principal through ``principal_dependency`` and returns it
        once the gate has accepted the request.
        """

        async def dependency(request: Request, principal=Depends(principal_dependency)):
            ctx = RequestContext(
                method=request.method,
                path=request.url.path,
                params={key: str(value) for key, value in request.path_params.items()},
            )
            await gate_provider().authorize(principal, self.get(operation_id), ctx)
            return principal

        return dependency
