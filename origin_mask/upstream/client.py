import logging
from typing import Dict, Iterable, List, Optional, Tuple

import httpx
from opentelemetry import trace

from origin_mask.errors import (
    BodyDecodeError,
    RedirectLoopDetected,
    UpstreamBadStatus,
    UpstreamConnectionError,
    UpstreamTimeout,
)
from origin_mask.models import ProxyRequest, ResolvedRoute, UploadRecord, UpstreamResponse

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that would reveal the proxy to the upstream, or that httpx recomputes
STRIPPED_REQUEST_HEADERS = {
    "host",
    "content-length",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-real-ip",
}

# The body handed back has already been decoded, so these no longer describe it
STRIPPED_RESPONSE_HEADERS = {"content-encoding", "content-length"}


def prepare_headers(request: ProxyRequest) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream.
    Removes hop-by-hop and proxy-identifying headers and asks for an uncompressed body.
    """
    headers = {}
    for name, value in request.headers:
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in STRIPPED_REQUEST_HEADERS:
            continue
        if request.uploads and name_lower == "content-type":
            # httpx writes a new multipart boundary
            continue
        headers[name_lower] = value

    headers["accept-encoding"] = "identity"
    return headers


def encode_uploads(
    uploads: Iterable[UploadRecord],
) -> Tuple[Dict[str, List[str]], List[Tuple[str, Tuple[str, bytes, str]]]]:
    """Split decoded multipart records into httpx ``data`` and ``files`` arguments."""
    data: Dict[str, List[str]] = {}
    files = []
    for record in uploads:
        if record.filename is None:
            data.setdefault(record.field_name, []).append(
                record.data.decode("utf-8", errors="replace")
            )
        else:
            files.append(
                (
                    record.field_name,
                    (
                        record.filename,
                        record.data,
                        record.content_type or "application/octet-stream",
                    ),
                )
            )
    return data, files


class UpstreamClient:
    """Sends one buffered request to a resolved origin. Redirects are never followed."""

    def __init__(
        self,
        timeout: float = 30.0,
        passthrough_statuses: Optional[Iterable[int]] = None,
    ):
        self.timeout = timeout
        self.passthrough_statuses = frozenset(passthrough_statuses or ())

    def is_accepted(self, status: int) -> bool:
        return 200 <= status <= 399 or status in self.passthrough_statuses

    async def send(self, route: ResolvedRoute, request: ProxyRequest) -> UpstreamResponse:
        target_url = route.url
        headers = prepare_headers(request)

        request_kwargs = {
            "method": request.method,
            "url": target_url,
            "headers": headers,
        }
        if request.uploads:
            data, files = encode_uploads(request.uploads)
            request_kwargs["data"] = data
            request_kwargs["files"] = files
        else:
            request_kwargs["content"] = request.body

        with tracer.start_as_current_span("upstream_request") as span:
            span.set_attribute("upstream.url", target_url)
            span.set_attribute("upstream.method", request.method)
            logger.debug(f"[Upstream] {request.method} {target_url}")

            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    follow_redirects=False,
                ) as client:
                    response = await client.request(**request_kwargs)
            except httpx.TimeoutException as e:
                span.set_attribute("upstream.error", "timeout")
                raise UpstreamTimeout(
                    f"Upstream timed out after {self.timeout}s: {target_url}"
                ) from e
            except httpx.DecodingError as e:
                span.set_attribute("upstream.error", "decoding")
                raise BodyDecodeError(
                    f"Could not decode upstream body from {target_url}: {e}"
                ) from e
            except httpx.HTTPError as e:
                span.set_attribute("upstream.error", "connection_failed")
                raise UpstreamConnectionError(
                    f"Cannot connect to upstream {target_url}: {e}"
                ) from e

            status = response.status_code
            span.set_attribute("upstream.status_code", status)

            if status == 508:
                raise RedirectLoopDetected(
                    f"Upstream {target_url} reported a redirect loop (508)"
                )
            if not self.is_accepted(status):
                reason = getattr(response, "reason_phrase", "") or ""
                raise UpstreamBadStatus(
                    f"Upstream responded with {status} {reason}".strip(),
                    status=status,
                )

            stripped = STRIPPED_RESPONSE_HEADERS
            if request.method == "HEAD":
                # No body came back, the upstream length still describes the resource
                stripped = stripped - {"content-length"}
            response_headers = [
                (name, value)
                for name, value in response.headers.multi_items()
                if name.lower() not in stripped
                and name.lower() not in HOP_BY_HOP_HEADERS
            ]
            return UpstreamResponse(
                status=status,
                headers=response_headers,
                body=response.content,
                content_type=response.headers.get("content-type", ""),
            )
