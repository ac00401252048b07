import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.middleware import REQUEST_ID_HEADER, ExceptionHandlerMiddleware
from app.lib.rpc_gateway import RpcError
from app.schemas.review import MalformedPayloadError
from app.services.submission_gate import ReviewLockedError


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(ExceptionHandlerMiddleware)

    @app.get("/ok")
    async def ok():
        return {"ok": True}

    @app.get("/rpc")
    async def rpc():
        raise RpcError("permission denied for table reviews", procedure="reviews_list_v1")

    @app.get("/locked")
    async def locked():
        raise ReviewLockedError("Review has been submitted; unlock it before editing")

    @app.get("/malformed")
    async def malformed():
        raise MalformedPayloadError("Ratings must be a JSON object.")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return app


@pytest.fixture
def client():
    with TestClient(_app()) as c:
        yield c


@pytest.mark.unit
def test_success_echoes_request_id(client):
    resp = client.get("/ok", headers={REQUEST_ID_HEADER: "req-42"})
    assert resp.status_code == 200
    assert resp.headers[REQUEST_ID_HEADER] == "req-42"


@pytest.mark.unit
def test_request_id_generated_when_missing(client):
    resp = client.get("/ok")
    assert resp.headers[REQUEST_ID_HEADER]


@pytest.mark.unit
@pytest.mark.parametrize(
    "path,status,kind",
    [
        ("/rpc", 502, "upstream_error"),
        ("/locked", 403, "forbidden"),
        ("/malformed", 400, "malformed_payload"),
    ],
)
def test_escaped_domain_errors_are_mapped(client, path, status, kind):
    resp = client.get(path)
    assert resp.status_code == status
    assert resp.json()["type"] == kind
    assert REQUEST_ID_HEADER in resp.headers


@pytest.mark.unit
def test_rpc_message_is_passed_through(client):
    resp = client.get("/rpc")
    assert resp.json()["detail"] == "permission denied for table reviews"


@pytest.mark.unit
def test_unknown_error_hides_details(client):
    resp = client.get("/boom")
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error", "type": "server_error"}
