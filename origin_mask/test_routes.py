from unittest.mock import AsyncMock, Mock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from origin_mask.models import (
    CacheStats,
    CapturedTextResponse,
    HealthResponse,
    ProxyResponse,
)
from origin_mask.proxy.service import ProxyService, get_proxy_service
from origin_mask.routes import router


@pytest.fixture
def service():
    service = Mock(spec=ProxyService)
    service.handle = AsyncMock(
        return_value=ProxyResponse(
            status=200,
            headers=[("content-type", "text/plain"), ("content-length", "2")],
            body=b"ok",
        )
    )
    return service


@pytest.fixture
def client(service):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_proxy_service] = lambda: service
    return TestClient(app)


class TestAuxiliaryRoutes:
    """Routes answered by the proxy itself."""

    def test_health(self, client, service):
        service.health.return_value = HealthResponse(
            status="ok",
            uptimeSeconds=3.5,
            requestCount=7,
            errorCount=1,
            cache=CacheStats(entries=2, maxEntries=500),
        )

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "uptimeSeconds": 3.5,
            "requestCount": 7,
            "errorCount": 1,
            "cache": {"entries": 2, "maxEntries": 500},
        }
        service.handle.assert_not_awaited()

    def test_captured_text_schedules_refresh(self, client, service):
        service.schedule_refresh_if_stale.return_value = True
        service.captured_text_payload.return_value = CapturedTextResponse(
            capturedText=None, lastCaptureTime=None, isCapturing=True
        )

        response = client.get("/api/captured-text")

        assert response.json() == {
            "capturedText": None,
            "lastCaptureTime": None,
            "isCapturing": True,
        }
        service.schedule_refresh_if_stale.assert_called_once()

    def test_set_selected_choice(self, client, service):
        service.set_selected_choice.return_value = CapturedTextResponse(
            capturedText="Run 5k", lastCaptureTime=100.0, isCapturing=False
        )

        response = client.post(
            "/api/set-selected-choice", json={"selectedText": "Run 5k"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "capturedText": "Run 5k"}
        service.set_selected_choice.assert_called_once_with("Run 5k")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"json": {}},
            {"json": {"selectedText": 42}},
            {"json": ["Run 5k"]},
            {"content": b"not json", "headers": {"content-type": "application/json"}},
        ],
    )
    def test_set_selected_choice_rejects_bad_payload(self, client, service, kwargs):
        response = client.post("/api/set-selected-choice", **kwargs)

        assert response.status_code == 400
        assert response.json()["success"] is False
        service.set_selected_choice.assert_not_called()


class TestProxyRoute:
    """The catch-all route hands everything else to the proxy service."""

    def test_builds_proxy_request(self, client, service):
        response = client.post(
            "/api/v1/answers?step=2",
            content=b'{"a": 1}',
            headers={"content-type": "application/json", "x-custom": "yes"},
        )

        assert response.status_code == 200
        assert response.content == b"ok"
        (proxy_request,) = service.handle.await_args.args
        assert proxy_request.method == "POST"
        assert proxy_request.path == "/api/v1/answers"
        assert proxy_request.query == "step=2"
        assert proxy_request.body == b'{"a": 1}'
        assert proxy_request.header("x-custom") == "yes"
        assert proxy_request.uploads == ()

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH", "OPTIONS"])
    def test_all_methods_proxied(self, client, service, method):
        response = client.request(method, "/anything/here")

        assert response.status_code == 200
        assert service.handle.await_args.args[0].method == method

    def test_multipart_decoded_into_uploads(self, client, service):
        client.post(
            "/upload",
            data={"note": "front page"},
            files={"photo": ("cat.png", b"\x89PNG", "image/png")},
        )

        (proxy_request,) = service.handle.await_args.args
        uploads = {u.field_name: u for u in proxy_request.uploads}
        assert uploads["note"].data == b"front page"
        assert uploads["note"].filename is None
        assert uploads["photo"].data == b"\x89PNG"
        assert uploads["photo"].filename == "cat.png"
        assert uploads["photo"].content_type == "image/png"
        assert proxy_request.body == b""

    def test_repeated_headers_preserved(self, client, service):
        service.handle.return_value = ProxyResponse(
            status=302,
            headers=[
                ("location", "/home"),
                ("set-cookie", "a=1; Path=/"),
                ("set-cookie", "b=2; Path=/"),
                ("content-length", "0"),
            ],
            body=b"",
        )

        response = client.get("/login", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/home"
        assert response.headers.get_list("set-cookie") == ["a=1; Path=/", "b=2; Path=/"]

    def test_encoded_path_kept_escaped(self, client, service):
        client.get("/files/a%3Fb%23c?v=1")

        (proxy_request,) = service.handle.await_args.args
        assert proxy_request.path == "/files/a%3Fb%23c"
        assert proxy_request.query == "v=1"
        assert proxy_request.path_with_query == "/files/a%3Fb%23c?v=1"

    def test_error_status_mirrored(self, client, service):
        service.handle.return_value = ProxyResponse(
            status=504,
            headers=[("content-type", "text/plain; charset=utf-8"), ("content-length", "9")],
            body=b"timed out",
        )

        response = client.get("/slow")

        assert response.status_code == 504
        assert response.text == "timed out"


class TestWebSocketRoute:
    def test_websocket_handed_to_relay(self, client, service):
        async def relay(websocket, path, query):
            await websocket.accept()
            await websocket.send_json({"path": path, "query": query})
            await websocket.close()

        service.relay_websocket = AsyncMock(side_effect=relay)

        with client.websocket_connect("/api/live%3Fx?room=1") as ws:
            assert ws.receive_json() == {"path": "/api/live%3Fx", "query": "room=1"}

        service.relay_websocket.assert_awaited_once()
