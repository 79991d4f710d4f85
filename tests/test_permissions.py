import itertools

import pytest

from warden.service import permissions as perms
from warden.service.errors import ValidationError
from warden.service.permissions import PermissionEngine
from warden.storage.memory import MemoryStore
from warden.storage.models import STATUS_INACTIVE, Permission, Role, User


def _permission(pid, code, status="active", level=0, resource=None):
    module, action = code.split(":")
    return Permission(
        id=pid,
        name=code,
        code=code,
        module=module,
        action=action,
        status=status,
        level=level,
        resource=resource,
    )


def _user(*roles, status="active"):
    return User(id=1, username="alice", status=status, roles=list(roles))


class TestSuperAdmin:
    @pytest.mark.parametrize("code", ["admin", "super_admin"])
    def test_bypass(self, code):
        user = _user(Role(id=1, name="Boss", code=code))

        assert perms.is_super_admin(user)
        assert perms.has_permission(user, "anything:whatever")
        assert perms.has_permission_level(user, 10_000)
        assert perms.can_access_resource(user, "/not-api/whatever", "delete")

    def test_inactive_admin_role_grants_nothing(self):
        user = _user(Role(id=1, name="Boss", code="super_admin", status=STATUS_INACTIVE))

        assert not perms.is_super_admin(user)
        assert not perms.has_permission(user, "user:read")

    def test_no_user(self):
        assert not perms.is_super_admin(None)
        assert not perms.has_permission(None, "user:read")
        assert not perms.can_access_resource(None, "/api/users", "read")
        assert not perms.has_permission_level(None, 0)


class TestRoleGraph:
    def test_permission_requires_active_role_and_permission(self):
        granted = _permission(1, "user:read")
        disabled = _permission(2, "user:delete", status=STATUS_INACTIVE)
        dormant = Role(id=2, name="Dormant", code="dormant", status=STATUS_INACTIVE,
                       permissions=[_permission(3, "role:read")])
        user = _user(Role(id=1, name="Reader", code="reader", permissions=[granted, disabled]), dormant)

        assert perms.has_permission(user, "user:read")
        assert not perms.has_permission(user, "user:delete")
        assert not perms.has_permission(user, "role:read")
        assert perms.has_module_permission(user, "user", "read")

    def test_roles(self):
        user = _user(
            Role(id=1, name="Editor", code="editor"),
            Role(id=2, name="Auditor", code="auditor", status=STATUS_INACTIVE),
        )

        assert perms.has_role(user, "editor")
        assert not perms.has_role(user, "auditor")
        assert perms.has_any_role(user, ["auditor", "editor"])
        assert not perms.has_any_role(user, ["auditor"])

    def test_effective_level_spans_roles_and_permissions(self):
        user = _user(
            Role(id=1, name="A", code="a", level=3, permissions=[_permission(1, "user:read", level=7)]),
            Role(id=2, name="B", code="b", level=50, status=STATUS_INACTIVE),
        )

        assert perms.effective_max_level(user) == 7
        assert perms.has_permission_level(user, 7)
        assert not perms.has_permission_level(user, 8)

    def test_level_grows_with_roles_and_shrinks_without_them(self):
        pool = [
            Role(id=1, name="A", code="a", level=3),
            Role(id=2, name="B", code="b", level=1, permissions=[_permission(1, "user:read", level=9)]),
            Role(id=3, name="C", code="c", level=5, permissions=[_permission(2, "role:read", level=2)]),
            Role(id=4, name="D", code="d", level=40, status=STATUS_INACTIVE),
            Role(id=5, name="E", code="e", level=0),
        ]
        for size in range(len(pool) + 1):
            for held in itertools.combinations(pool, size):
                before = perms.effective_max_level(_user(*held))
                for extra in pool:
                    if extra in held:
                        continue
                    after = perms.effective_max_level(_user(*held, extra))
                    assert after >= before
                for dropped in held:
                    remaining = [role for role in held if role is not dropped]
                    assert perms.effective_max_level(_user(*remaining)) <= before

    def test_level_grows_with_permissions_on_a_role(self):
        grants = [_permission(pid, f"user:p{pid}", level=level) for pid, level in enumerate([4, 0, 11, 6], 1)]
        previous = 0
        for count in range(len(grants) + 1):
            role = Role(id=1, name="A", code="a", level=2, permissions=grants[:count])
            current = perms.effective_max_level(_user(role))
            assert current >= previous
            previous = current
        assert previous == 11

    def test_user_permission_listing(self):
        user = _user(
            Role(id=1, name="A", code="a", permissions=[
                _permission(1, "user:read"), _permission(2, "user:create"),
            ]),
            Role(id=2, name="B", code="b", permissions=[
                _permission(1, "user:read"),
                _permission(3, "menu:read"),
                _permission(4, "user:delete", status=STATUS_INACTIVE),
            ]),
        )

        assert perms.get_user_permissions(user) == ["menu:read", "user:create", "user:read"]
        assert perms.get_user_module_permissions(user, "user") == ["create", "read"]
        assert perms.get_user_permissions(None) == []


class TestResourceHeuristic:
    @pytest.mark.parametrize(
        "path,module",
        [
            ("/api/users", "user"),
            ("/api/users/42", "user"),
            ("/api/roles/1/users", "role"),
            ("/api/status", "statu"),
            ("/api/menu", "menu"),
            ("/healthz", None),
            ("", None),
        ],
    )
    def test_resource_module(self, path, module):
        assert perms.resource_module(path) == module

    def test_can_access_resource(self):
        user = _user(Role(id=1, name="Reader", code="reader", permissions=[_permission(1, "user:read")]))

        assert perms.can_access_resource(user, "/api/users/42", "read")
        assert not perms.can_access_resource(user, "/api/users/42", "delete")
        assert not perms.can_access_resource(user, "/other/users", "read")


class TestCodes:
    @pytest.mark.parametrize("code", ["user:read", "_x:y_1", "Menu:Manage"])
    def test_valid(self, code):
        assert perms.is_valid_code(code)
        module, action = perms.parse_code(code)
        assert perms.generate_code(module, action) == code

    @pytest.mark.parametrize("code", ["user", "user:", ":read", "1user:read", "user:read:all", "us-er:read", "usér:read"])
    def test_invalid(self, code):
        assert not perms.is_valid_code(code)
        with pytest.raises(ValidationError):
            perms.parse_code(code)

    def test_generate_rejects_bad_parts(self):
        with pytest.raises(ValidationError):
            perms.generate_code("user", "read all")


class TestPermissionEngine:
    def _setup(self):
        store = MemoryStore()
        read = store.create_permission("read users", "user:read", "user", "read")
        exact = store.create_permission(
            "read reports", "report:export", "report", "export", resource="/api/reports/export"
        )
        role = store.create_role("Reader", "reader", permission_ids=[read.id, exact.id])
        user = store.create_user("alice", "hash")
        user = store.set_user_roles(user.id, [role.id])
        return store, PermissionEngine(store), user

    async def test_disable_takes_effect_without_reload(self):
        store, engine, user = self._setup()

        assert await engine.has_dynamic_permission(user, "user:read")
        assert await engine.disable_permission("user:read")

        # The user record still carries the permission as loaded earlier
        assert perms.has_permission(user, "user:read") is True
        assert await engine.has_dynamic_permission(user, "user:read") is False

        assert await engine.enable_permission("user:read")
        assert await engine.has_dynamic_permission(user, "user:read") is True

    async def test_unknown_code_status_change(self):
        _, engine, _ = self._setup()
        assert await engine.disable_permission("ghost:read") is False
        assert await engine.enable_permission("ghost:read") is False

    async def test_exact_resource_match(self):
        _, engine, user = self._setup()

        assert await engine.can_access_resource_dynamic(user, "/api/reports/export", "export")
        assert await engine.can_access_resource_dynamic(user, "/api/users/7", "read")
        assert not await engine.can_access_resource_dynamic(user, "/api/users/7", "update")
        assert not await engine.can_access_resource_dynamic(user, "/internal", "read")

    async def test_dynamic_listing_skips_inactive(self):
        store, engine, user = self._setup()
        await engine.disable_permission("report:export")

        assert await engine.get_user_dynamic_permissions(user) == ["user:read"]
        assert await engine.get_user_dynamic_permissions(None) == []

    async def test_create_dynamic_permission_is_idempotent(self):
        store, engine, _ = self._setup()

        created = await engine.create_dynamic_permission("audit", "read", "read audit log")
        again = await engine.create_dynamic_permission("audit", "read", "other name")

        assert created.code == "audit:read"
        assert created.path == str(created.id)
        assert again.id == created.id
        with pytest.raises(ValidationError):
            await engine.create_dynamic_permission("audit log", "read", "bad")

    async def test_super_admin_skips_store(self):
        store = MemoryStore()
        engine = PermissionEngine(store)
        admin = _user(Role(id=1, name="Admin", code="admin"))

        assert await engine.has_dynamic_permission(admin, "ghost:read")
        assert await engine.can_access_resource_dynamic(admin, "/anything", "delete")
