from __future__ import annotations

import asyncio
import inspect
from typing import Iterable, Optional, Union

from warden.logging import get_logger
from warden.service import permissions
from warden.service.errors import ForbiddenError
from warden.service.permissions import PermissionEngine
from warden.service.requirements import (
    OPERATOR_AND,
    LevelRequirement,
    PermissionRequirement,
    PermissionSet,
    RequestContext,
    Requirement,
    RoleRequirement,
    action_from_method,
    describe_set,
    resolve_resource,
)
from warden.storage.models import User

logger = get_logger(__name__)


class AuthorizationGate:
    """Request-scoped enforcement point in front of the permission engine."""

    def __init__(self, engine: PermissionEngine) -> None:
        self.engine = engine

    async def authorize(
        self,
        user: Optional[User],
        requirement: Union[None, Requirement, Iterable[Requirement]],
        ctx: Optional[RequestContext] = None,
    ) -> None:
        """Raise ``ForbiddenError`` unless ``user`` satisfies every requirement."""
        if user is None:
            raise ForbiddenError("not authenticated")
        if not permissions.is_active(user):
            raise ForbiddenError("account disabled")
        if requirement is None:
            return
        ctx = ctx or RequestContext()
        if isinstance(requirement, (PermissionRequirement, PermissionSet, RoleRequirement, LevelRequirement)):
            requirements = (requirement,)
        else:
            requirements = tuple(requirement)
        for item in requirements:
            await self._enforce(user, item, ctx)

    async def _enforce(self, user: User, requirement: Requirement, ctx: RequestContext) -> None:
        if isinstance(requirement, LevelRequirement):
            if not permissions.has_permission_level(user, requirement.level):
                current = permissions.effective_max_level(user)
                self._deny(
                    user,
                    ctx,
                    f"requires permission level {requirement.level}, current level {current}",
                )
            return
        if isinstance(requirement, RoleRequirement):
            if not permissions.has_any_role(user, requirement.roles):
                self._deny(
                    user,
                    ctx,
                    f"requires role: {' or '.join(requirement.roles)}",
                )
            return
        if isinstance(requirement, PermissionSet):
            allowed = await self.check_set(user, requirement, ctx)
        else:
            allowed = await self.check(user, requirement, ctx)
        if not allowed:
            self._deny(user, ctx, f"insufficient permissions: {describe_set(requirement)}")

    def _deny(self, user: User, ctx: RequestContext, message: str) -> None:
        logger.warning(
            "authorization_denied",
            user_id=user.id,
            method=ctx.method,
            path=ctx.path,
            reason=message,
        )
        raise ForbiddenError(message)

    async def check_set(self, user: User, requirements: PermissionSet, ctx: RequestContext) -> bool:
        results = await asyncio.gather(
            *(self.check(user, r, ctx) for r in requirements.requirements)
        )
        if requirements.operator == OPERATOR_AND:
            return all(results)
        return any(results)

    async def check(self, user: User, requirement: PermissionRequirement, ctx: RequestContext) -> bool:
        if requirement.custom_check is not None:
            try:
                result = requirement.custom_check(user, ctx)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                logger.warning(
                    "custom_permission_check_failed",
                    user_id=user.id,
                    path=ctx.path,
                    error_type=type(exc).__name__,
                )
                raise ForbiddenError("permission check failed") from exc
            return bool(result)

        if requirement.check_resource:
            resource = resolve_resource(requirement, ctx.path, ctx.params)
            action = requirement.action or action_from_method(ctx.method)
            if requirement.dynamic:
                return await self.engine.can_access_resource_dynamic(user, resource, action)
            return permissions.can_access_resource(user, resource, action)

        if requirement.code:
            if requirement.dynamic:
                return await self.engine.has_dynamic_permission(user, requirement.code)
            return permissions.has_permission(user, requirement.code)

        if requirement.module and requirement.action:
            if requirement.dynamic:
                return await self.engine.has_dynamic_module_permission(
                    user, requirement.module, requirement.action
                )
            return permissions.has_module_permission(user, requirement.module, requirement.action)

        raise ForbiddenError("invalid permission configuration")
