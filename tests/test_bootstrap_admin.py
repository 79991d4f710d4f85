from scripts.bootstrap_admin import ACTIONS, MODULES, bootstrap_admin, validate_password
from warden.service import permissions as perms
from warden.service.runtime import get_runtime


def test_validate_password():
    assert validate_password("Secret123")
    assert not validate_password("secret123")
    assert not validate_password("Sh0rt")


async def test_seeds_catalog_and_creates_admin():
    result = await bootstrap_admin("admin", "admin@example.com", "Secret123")
    runtime = get_runtime()

    assert result["status"] == "created"
    assert len(runtime.store.list_permissions()) == len(MODULES) * len(ACTIONS)
    user = runtime.store.get_user(result["user_id"])
    assert {r.code for r in user.roles} == {"user", "super_admin"}
    assert perms.is_super_admin(user)

    regular = runtime.store.get_role_by_code("user")
    assert sorted(p.code for p in regular.permissions) == ["menu:read", "user:read"]


async def test_rerun_is_idempotent():
    first = await bootstrap_admin("admin", "admin@example.com", "Secret123")
    second = await bootstrap_admin("admin", "admin@example.com", "Secret123")

    assert second == {"user_id": first["user_id"], "username": "admin", "status": "already_admin"}
    assert len(get_runtime().store.list_roles()) == 2


async def test_promotes_existing_user():
    runtime = get_runtime()
    runtime.store.create_user("ops", "hash", email="ops@example.com")

    result = await bootstrap_admin("ops", "ops@example.com", "Secret123")

    assert result["status"] == "promoted"
    assert perms.is_super_admin(runtime.store.get_user(result["user_id"]))


async def test_dry_run_changes_nothing():
    result = await bootstrap_admin("admin", "admin@example.com", "Secret123", dry_run=True)

    assert result["status"] == "dry_run"
    runtime = get_runtime()
    assert runtime.store.list_permissions() == []
    assert runtime.store.get_user_by_username("admin") is None
