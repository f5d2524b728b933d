import logging
from typing import List

from fastapi import APIRouter, Depends, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile
from starlette.requests import HTTPConnection

from origin_mask.models import (
    CapturedTextResponse,
    HealthResponse,
    ProxyRequest,
    ProxyResponse,
    UploadRecord,
)
from origin_mask.proxy.service import ProxyService, get_proxy_service

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


async def _upload_records(request: Request) -> List[UploadRecord]:
    """Decode a multipart body into records the upstream client can re-encode."""
    records = []
    form = await request.form()
    for name, value in form.multi_items():
        if isinstance(value, UploadFile):
            records.append(
                UploadRecord(
                    field_name=name,
                    data=await value.read(),
                    filename=value.filename or "",
                    content_type=value.content_type,
                )
            )
        else:
            records.append(UploadRecord(field_name=name, data=value.encode("utf-8")))
    return records


def raw_path(connection: HTTPConnection) -> str:
    """The path as the client sent it, so escapes such as %3F and %23 stay escaped."""
    raw = connection.scope.get("raw_path")
    if not raw:
        return connection.url.path
    return raw.decode("latin-1").split("?", 1)[0]


async def build_proxy_request(request: Request) -> ProxyRequest:
    content_type = request.headers.get("content-type", "").lower()
    uploads = ()
    body = b""
    if content_type.startswith("multipart/form-data"):
        uploads = tuple(await _upload_records(request))
    else:
        body = await request.body()

    return ProxyRequest(
        method=request.method,
        path=raw_path(request),
        query=request.url.query,
        headers=tuple(request.headers.items()),
        body=body,
        client_host=request.client.host if request.client else "unknown",
        scheme=request.url.scheme,
        uploads=uploads,
    )


def to_response(result: ProxyResponse) -> Response:
    """Build the outgoing response, keeping repeated headers such as Set-Cookie."""
    response = Response(content=result.body, status_code=result.status)
    response.raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in result.headers
    ]
    return response


@router.get("/health", response_model=HealthResponse)
async def health(service: ProxyService = Depends(get_proxy_service)):
    return service.health()


@router.get("/api/captured-text", response_model=CapturedTextResponse)
async def captured_text(service: ProxyService = Depends(get_proxy_service)):
    if service.schedule_refresh_if_stale():
        logger.debug("[Capture] Stale captured text, refresh scheduled")
    return service.captured_text_payload()


@router.post("/api/set-selected-choice")
async def set_selected_choice(
    request: Request, service: ProxyService = Depends(get_proxy_service)
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    selected = payload.get("selectedText") if isinstance(payload, dict) else None
    if not isinstance(selected, str):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "selectedText must be a string"},
        )

    result = service.set_selected_choice(selected)
    return {"success": True, "capturedText": result.capturedText}


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_all(
    request: Request, path: str, service: ProxyService = Depends(get_proxy_service)
):
    """Catch-all route that proxies all remaining requests to the mapped upstream."""
    proxy_request = await build_proxy_request(request)
    return to_response(await service.handle(proxy_request))


@router.websocket("/{path:path}")
async def proxy_websocket(
    websocket: WebSocket, path: str, service: ProxyService = Depends(get_proxy_service)
):
    """Relays WebSocket connections to the mapped upstream."""
    await service.relay_websocket(websocket, raw_path(websocket), websocket.url.query)
