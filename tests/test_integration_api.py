import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.api.routes import registry, router
from warden.service.runtime import get_runtime

PASSWORD = "Secret123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, username, email=None, phone=None):
    payload = {"username": username, "email": email or f"{username}@example.com", "password": PASSWORD}
    if phone:
        payload["phone"] = phone
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(data) -> dict:
    return {"Authorization": f"Bearer {data['access_token']}"}


def _admin(client):
    data = _register(client, "root")
    runtime = get_runtime()
    role = runtime.store.create_role("Super Admin", "super_admin", level=100, is_system=True)
    runtime.store.set_user_roles(data["user"]["id"], [role.id])
    return data


class TestRegistration:
    def test_register_returns_session(self, client):
        data = _register(client, "alice", email="Alice@Example.com")

        assert data["user"]["username"] == "alice"
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["roles"] == []
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 7 * 86400
        assert "password_hash" not in data["user"]

    def test_register_attaches_default_role(self, client):
        get_runtime().store.create_role("User", "user", level=1)
        data = _register(client, "alice")
        assert [r["code"] for r in data["user"]["roles"]] == ["user"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"username": "al", "email": "al@example.com", "password": PASSWORD},
            {"username": "bad name", "email": "b@example.com", "password": PASSWORD},
            {"username": "alice", "email": "not-an-email", "password": PASSWORD},
            {"username": "alice", "email": "a@example.com", "password": "weakpass"},
            {"username": "alice", "email": "a@example.com", "password": PASSWORD, "phone": "12345"},
        ],
    )
    def test_register_validation(self, client, payload):
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_duplicate_username(self, client):
        _register(client, "alice")
        response = client.post(
            "/api/auth/register",
            json={"username": "alice", "email": "other@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "username"}


class TestLoginAndSession:
    def test_login_by_email_and_phone(self, client):
        _register(client, "alice", phone="13800138000")

        for identifier in ("alice@example.com", "13800138000", "alice"):
            response = client.post("/api/auth/login", json={"username": identifier, "password": PASSWORD})
            assert response.status_code == 200
            assert response.json()["data"]["user"]["last_login_at"] is not None

    def test_bad_credentials(self, client):
        _register(client, "alice")
        response = client.post("/api/auth/login", json={"username": "alice", "password": "Wrong123"})

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "incorrect username or password",
            "details": None,
        }

    def test_profile_requires_token(self, client):
        response = client.get("/api/auth/profile")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "missing bearer token"

    def test_profile(self, client):
        data = _register(client, "alice")
        response = client.get("/api/auth/profile", headers=_auth(data))

        assert response.status_code == 200
        assert response.json()["data"]["username"] == "alice"

    def test_second_login_retires_first(self, client):
        first = _register(client, "alice")
        second = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD}).json()["data"]

        assert client.get("/api/auth/profile", headers=_auth(first)).status_code == 401
        assert client.get("/api/auth/profile", headers=_auth(second)).status_code == 200

    def test_refresh_rotation(self, client):
        data = _register(client, "alice")

        response = client.post("/api/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert client.get("/api/auth/profile", headers=_auth(rotated)).status_code == 200

        replay = client.post("/api/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid refresh token"

    def test_logout(self, client):
        data = _register(client, "alice")

        response = client.post(
            "/api/auth/logout", json={"refresh_token": data["refresh_token"]}, headers=_auth(data)
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"logged_out": True}

        assert client.get("/api/auth/profile", headers=_auth(data)).status_code == 401
        refresh = client.post("/api/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_body(self, client):
        data = _register(client, "alice")
        response = client.post("/api/auth/logout", headers=_auth(data))
        assert response.status_code == 200

    def test_banned_user_rejected(self, client):
        data = _register(client, "alice")
        get_runtime().store.set_user_status(data["user"]["id"], "banned")

        response = client.get("/api/auth/profile", headers=_auth(data))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "account disabled"


class TestAuthorization:
    def test_plain_user_forbidden(self, client):
        data = _register(client, "alice")

        response = client.get("/api/roles", headers=_auth(data))
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "insufficient permissions: role:read",
            "details": None,
        }

    def test_admin_only_route(self, client):
        data = _register(client, "alice")
        response = client.post("/api/permissions/user:read/disable", headers=_auth(data))
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "requires role: admin or super_admin"

    def test_granted_role_opens_routes(self, client):
        admin = _admin(client)
        user = _register(client, "alice")

        permission = client.post(
            "/api/permissions",
            json={"name": "read roles", "module": "role", "action": "read", "resource": "/api/roles"},
            headers=_auth(admin),
        )
        assert permission.status_code == 201
        pid = permission.json()["data"]["id"]
        assert permission.json()["data"]["code"] == "role:read"

        role = client.post(
            "/api/roles",
            json={"name": "Auditor", "code": "auditor", "level": 2, "permission_ids": [pid]},
            headers=_auth(admin),
        )
        assert role.status_code == 201
        rid = role.json()["data"]["id"]

        assigned = client.post(
            "/api/roles/assign",
            json={"user_ids": [user["user"]["id"]], "role_ids": [rid]},
            headers=_auth(admin),
        )
        assert assigned.status_code == 200
        assert [r["code"] for r in assigned.json()["data"][0]["roles"]] == ["auditor"]

        listing = client.get("/api/roles", headers=_auth(user))
        assert listing.status_code == 200
        assert {r["code"] for r in listing.json()["data"]["items"]} == {"super_admin", "auditor"}

        detail = client.get(f"/api/roles/{rid}", headers=_auth(user))
        assert detail.status_code == 200
        assert [p["code"] for p in detail.json()["data"]["permissions"]] == ["role:read"]

        members = client.get(f"/api/roles/{rid}/users", headers=_auth(user))
        assert members.status_code == 200
        assert [u["username"] for u in members.json()["data"]] == ["alice"]

        mine = client.get("/api/auth/permissions", headers=_auth(user)).json()["data"]
        assert mine == {"user_id": user["user"]["id"], "permissions": ["role:read"], "is_super_admin": False}

        # Disabling the permission applies without reassigning roles
        disabled = client.post("/api/permissions/role:read/disable", headers=_auth(admin))
        assert disabled.status_code == 200
        assert client.get("/api/roles", headers=_auth(user)).status_code == 403
        assert client.get("/api/auth/permissions", headers=_auth(user)).json()["data"]["permissions"] == []

        enabled = client.post("/api/permissions/role:read/enable", headers=_auth(admin))
        assert enabled.status_code == 200
        assert client.get("/api/roles", headers=_auth(user)).status_code == 200

    def test_disable_unknown_permission(self, client):
        admin = _admin(client)
        response = client.post("/api/permissions/ghost:read/disable", headers=_auth(admin))
        assert response.status_code == 404

    def test_every_route_is_registered(self):
        operations = set(registry.operations())
        for route in router.routes:
            if isinstance(route, APIRoute):
                assert route.operation_id in operations


class TestUserStatusAdministration:
    def test_ban_locks_out_next_request(self, client):
        admin = _admin(client)
        user = _register(client, "alice")
        uid = user["user"]["id"]
        assert client.get("/api/auth/profile", headers=_auth(user)).status_code == 200

        banned = client.patch(f"/api/users/{uid}/status", json={"status": "banned"}, headers=_auth(admin))
        assert banned.status_code == 200
        assert banned.json()["data"]["status"] == "banned"

        response = client.get("/api/auth/profile", headers=_auth(user))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "account disabled"
        relogin = client.post("/api/auth/login", json={"username": "alice", "password": PASSWORD})
        assert relogin.status_code == 401

        restored = client.patch(f"/api/users/{uid}/status", json={"status": "active"}, headers=_auth(admin))
        assert restored.status_code == 200
        assert client.get("/api/auth/profile", headers=_auth(user)).status_code == 200

    def test_batch_status(self, client):
        admin = _admin(client)
        alice = _register(client, "alice")
        bob = _register(client, "bob")

        response = client.patch(
            "/api/users/batch/status",
            json={"ids": [alice["user"]["id"], bob["user"]["id"]], "status": "inactive"},
            headers=_auth(admin),
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "inactive"
        assert client.get("/api/auth/profile", headers=_auth(alice)).status_code == 401
        assert client.get("/api/auth/profile", headers=_auth(bob)).status_code == 401

    def test_batch_with_unknown_user_changes_nothing(self, client):
        admin = _admin(client)
        alice = _register(client, "alice")

        response = client.patch(
            "/api/users/batch/status",
            json={"ids": [alice["user"]["id"], 999], "status": "banned"},
            headers=_auth(admin),
        )

        assert response.status_code == 404
        assert response.json()["error"]["details"] == {"missing": [999]}
        assert client.get("/api/auth/profile", headers=_auth(alice)).status_code == 200

    def test_unknown_status_rejected(self, client):
        admin = _admin(client)
        user = _register(client, "alice")

        response = client.patch(
            f"/api/users/{user['user']['id']}/status", json={"status": "deleted"}, headers=_auth(admin)
        )
        assert response.status_code == 400

    def test_unknown_user(self, client):
        admin = _admin(client)
        response = client.patch("/api/users/999/status", json={"status": "banned"}, headers=_auth(admin))
        assert response.status_code == 404

    def test_requires_user_update(self, client):
        alice = _register(client, "alice")
        bob = _register(client, "bob")

        response = client.patch(
            f"/api/users/{bob['user']['id']}/status", json={"status": "banned"}, headers=_auth(alice)
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "insufficient permissions: user:update"


class TestCatalogAdministration:
    def test_role_lifecycle(self, client):
        admin = _admin(client)
        headers = _auth(admin)

        created = client.post("/api/roles", json={"name": "Editor", "code": "editor"}, headers=headers)
        rid = created.json()["data"]["id"]

        duplicate = client.post("/api/roles", json={"name": "Editor 2", "code": "editor"}, headers=headers)
        assert duplicate.status_code == 409

        updated = client.patch(f"/api/roles/{rid}", json={"level": 5}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["data"]["level"] == 5

        by_code = client.get("/api/roles/code/editor", headers=headers)
        assert by_code.json()["data"]["id"] == rid

        deleted = client.delete(f"/api/roles/{rid}", headers=headers)
        assert deleted.json()["data"] == {"deleted": True, "role_id": rid}
        assert client.get(f"/api/roles/{rid}", headers=headers).status_code == 404

    def test_system_role_cannot_be_deleted(self, client):
        admin = _admin(client)
        role = get_runtime().store.get_role_by_code("super_admin")

        response = client.delete(f"/api/roles/{role.id}", headers=_auth(admin))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_permission_tree(self, client):
        admin = _admin(client)
        headers = _auth(admin)

        root = client.post(
            "/api/permissions", json={"name": "users", "module": "user", "action": "manage"}, headers=headers
        ).json()["data"]
        client.post(
            "/api/permissions",
            json={"name": "read users", "module": "user", "action": "read", "parent_id": root["id"]},
            headers=headers,
        )

        tree = client.get("/api/permissions/tree", headers=headers).json()["data"]
        assert [n["code"] for n in tree] == ["user:manage"]
        assert [c["code"] for c in tree[0]["children"]] == ["user:read"]

        bad = client.post(
            "/api/permissions", json={"name": "bad", "module": "user", "action": "read all"}, headers=headers
        )
        assert bad.status_code == 400

    def test_menus_visible_to_user(self, client):
        admin = _admin(client)
        headers = _auth(admin)
        runtime = get_runtime()
        read = runtime.store.create_permission("read users", "user:read", "user", "read")
        role = runtime.store.create_role("Reader", "reader", permission_ids=[read.id])
        user = _register(client, "alice")
        runtime.store.set_user_roles(user["user"]["id"], [role.id])

        root = client.post(
            "/api/menus", json={"name": "system", "title": "System", "path": "/system", "type": "directory"},
            headers=headers,
        )
        assert root.status_code == 201
        root_id = root.json()["data"]["id"]
        client.post(
            "/api/menus",
            json={"name": "users", "title": "Users", "path": "/system/users", "parent_id": root_id,
                  "permission_ids": [read.id]},
            headers=headers,
        )
        client.post(
            "/api/menus",
            json={"name": "roles", "title": "Roles", "path": "/system/roles", "parent_id": root_id,
                  "permission_ids": [runtime.store.create_permission("r", "role:read", "role", "read").id]},
            headers=headers,
        )

        for path in ("/api/auth/menus", "/api/menus/user-tree"):
            tree = client.get(path, headers=_auth(user)).json()["data"]
            assert [n["path"] for n in tree] == ["/system"]
            assert [c["path"] for c in tree[0]["children"]] == ["/system/users"]

        assert client.get("/api/menus", headers=_auth(user)).status_code == 403
        full = client.get("/api/menus/tree", headers=headers).json()["data"]
        assert len(full[0]["children"]) == 2


class TestOperational:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Request-ID"]

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
