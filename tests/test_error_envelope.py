import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from warden.api.error_handling import register_exception_handlers
from warden.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from warden.storage.errors import ConstraintViolation


class Item(BaseModel):
    name: str


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service/{kind}")
    async def service_error(kind: str):
        errors = {
            "bad": BadRequestError("parent menu does not exist", detail={"parent_id": 9}),
            "auth": AuthenticationError("missing bearer token"),
            "forbidden": ForbiddenError("requires role: admin or super_admin"),
            "missing": NotFoundError("role 3 not found", detail={"role_id": 3}),
            "conflict": ConflictError("username already exists", detail={"field": "username"}),
            "server": ServerError("store unavailable"),
        }
        raise errors[kind]

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("role code already exists", {"field": "code"})

    @app.get("/http")
    async def http_error():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/http-structured")
    async def http_structured():
        raise HTTPException(
            status_code=403,
            detail={"error": {"code": "forbidden", "message": "nope", "details": {"x": 1}}},
        )

    @app.post("/items")
    async def create_item(item: Item):
        return item

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestServiceErrors:
    @pytest.mark.parametrize(
        "kind,status_code,code",
        [
            ("bad", 400, "validation_error"),
            ("auth", 401, "unauthorized"),
            ("forbidden", 403, "forbidden"),
            ("missing", 404, "not_found"),
            ("conflict", 409, "conflict"),
            ("server", 500, "server_error"),
        ],
    )
    def test_status_and_code(self, client, kind, status_code, code):
        response = client.get(f"/service/{kind}")

        assert response.status_code == status_code
        body = response.json()
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"]["code"] == code
        assert body["request_id"]

    def test_details_passed_through(self, client):
        body = client.get("/service/missing").json()
        assert body["error"]["message"] == "role 3 not found"
        assert body["error"]["details"] == {"role_id": 3}

    def test_empty_details_are_null(self, client):
        body = client.get("/service/auth").json()
        assert body["error"]["details"] is None


class TestOtherErrors:
    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "role code already exists",
            "details": {"field": "code"},
        }

    def test_request_validation(self, client):
        response = client.post("/items", json={})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "request validation failed"
        assert error["details"][0]["loc"] == ["body", "name"]

    def test_plain_http_exception(self, client):
        response = client.get("/http")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "nothing here"

    def test_structured_http_exception(self, client):
        response = client.get("/http-structured")
        assert response.status_code == 403
        assert response.json()["error"] == {"code": "forbidden", "message": "nope", "details": {"x": 1}}

    def test_unknown_route(self, client):
        response = client.get("/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_uncaught_exception_hidden(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert "kaboom" not in error["message"]
