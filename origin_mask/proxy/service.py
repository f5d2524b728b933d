import asyncio
import logging
import threading
import time
from typing import Callable, List, Optional, Set

from opentelemetry import trace

from origin_mask import vars as config
from origin_mask.cache.captured_text import CapturedTextCache, extract_text
from origin_mask.cache.response_cache import ResponseCache
from origin_mask.errors import ProxyError, RewriteFailure, UpstreamError
from origin_mask.models import (
    CacheStats,
    CapturedTextResponse,
    CapturedTextSnapshot,
    Headers,
    HealthResponse,
    ProxyRequest,
    ProxyResponse,
    ResolvedRoute,
    UpstreamResponse,
)
from origin_mask.rewrite.body import BodyRewriter, charset_of, content_kind
from origin_mask.rewrite.content_edits import ContentEditor
from origin_mask.rewrite.cookies import CookieRewriter
from origin_mask.rewrite.redirects import RedirectRewriter
from origin_mask.routing.resolver import RouteResolver
from origin_mask.upstream.client import UpstreamClient
from origin_mask.upstream.websocket import WebSocketRelay
from origin_mask.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Would block the injected scripts on rewritten pages
CSP_HEADERS = {"content-security-policy", "content-security-policy-report-only"}

# Recomputed from the body handed to the client
_REPLACED_HEADERS = {"set-cookie", "location", "content-length"}

BODYLESS_STATUSES = {204, 304}


def plain_text_response(status: int, message: str) -> ProxyResponse:
    return ProxyResponse(
        status=status,
        headers=[("content-type", "text/plain; charset=utf-8")],
        body=message.encode("utf-8"),
    )


class ProxyService:
    """
    Per-request coordinator and owner of the shared proxy state.

    The resolver, rewriters and client are stateless after construction; the
    response cache, the captured-text slot and the counters are guarded by
    their own locks, none of which is held across an await.
    """

    def __init__(
        self,
        resolver: RouteResolver,
        client: UpstreamClient,
        redirects: RedirectRewriter,
        cookies: CookieRewriter,
        body_rewriter: BodyRewriter,
        cache: ResponseCache,
        captured_text: CapturedTextCache,
        capture_source_path: str = "",
        capture_selector: str = "h1",
        websocket_relay: Optional[WebSocketRelay] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.resolver = resolver
        self.client = client
        self.redirects = redirects
        self.cookies = cookies
        self.body_rewriter = body_rewriter
        self.cache = cache
        self.captured_text = captured_text
        self.capture_source_path = capture_source_path
        self.capture_selector = capture_selector
        self.websocket_relay = websocket_relay or WebSocketRelay()
        self._clock = clock
        self.started_at = clock()

        self._counter_lock = threading.Lock()
        self._request_count = 0
        self._error_count = 0

        self._background_tasks: List[asyncio.Task] = []
        self._refresh_tasks: Set[asyncio.Task] = set()

    # Counters

    def _count_request(self) -> None:
        with self._counter_lock:
            self._request_count += 1

    def _count_error(self) -> None:
        with self._counter_lock:
            self._error_count += 1

    def health(self) -> HealthResponse:
        with self._counter_lock:
            request_count = self._request_count
            error_count = self._error_count
        return HealthResponse(
            status="ok",
            uptimeSeconds=round(self._clock() - self.started_at, 3),
            requestCount=request_count,
            errorCount=error_count,
            cache=CacheStats(**self.cache.stats()),
        )

    # Proxying

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        """Proxy one inbound request. Never raises; failures become 5xx responses."""
        self._count_request()
        cache_url = request.path_with_query

        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.method", request.method)
            span.set_attribute("proxy.path", cache_url)

            cached = self.cache.get(request.method, cache_url)
            if cached is not None:
                span.set_attribute("proxy.cache", "hit")
                logger.debug(f"[Cache] HIT {request.method} {cache_url}")
                return ProxyResponse(
                    status=cached.status,
                    headers=list(cached.headers) + [("x-cache", "HIT")],
                    body=cached.body,
                )

            try:
                route = self.resolver.resolve(cache_url)
                span.set_attribute("proxy.target_url", route.url)
                logger.debug(f"[Proxy] {request.method} {cache_url} -> {route.url}")

                upstream = await self.client.send(route, request)
                span.set_attribute("proxy.status_code", upstream.status)

                response = self.build_response(request, route, upstream)
            except UpstreamError as e:
                self._count_error()
                span.set_attribute("proxy.error", type(e).__name__)
                log_exception_with_details(
                    logger, f"[Proxy] {request.method} {cache_url}", e, logging.WARNING
                )
                return plain_text_response(
                    e.response_status, format_exception_message(e)
                )
            except ProxyError as e:
                self._count_error()
                span.set_attribute("proxy.error", type(e).__name__)
                log_exception_with_details(logger, f"[Proxy] {request.method} {cache_url}", e)
                return plain_text_response(502, "Bad gateway")
            except Exception as e:
                self._count_error()
                span.set_attribute("proxy.error", str(e))
                log_exception_with_details(logger, f"[Proxy] {request.method} {cache_url}", e)
                return plain_text_response(502, "Bad gateway")

            if self.cache.put(
                request.method, cache_url, response.status, response.headers, response.body
            ):
                span.set_attribute("proxy.cache", "miss")
                response.headers.append(("x-cache", "MISS"))
            return response

    def build_response(
        self, request: ProxyRequest, route: ResolvedRoute, upstream: UpstreamResponse
    ) -> ProxyResponse:
        """Apply redirect, cookie and body rewriting to an accepted upstream response."""
        headers: Headers = [
            (name, value)
            for name, value in upstream.headers
            if name.lower() not in _REPLACED_HEADERS
        ]
        body = upstream.body

        if upstream.is_redirect:
            decision = self.redirects.rewrite(
                upstream.header("location"), route.url, upstream.status
            )
            headers.append(("location", decision.location))
        else:
            rewritten = self._rewrite_body(request, upstream)
            if rewritten is not None:
                body = rewritten
                if content_kind(upstream.content_type) == "html":
                    headers = [
                        (name, value)
                        for name, value in headers
                        if name.lower() not in CSP_HEADERS
                    ]

        set_cookies = upstream.header_values("set-cookie")
        if set_cookies:
            rewritten_cookies = self.cookies.rewrite(
                set_cookies,
                matched_prefix=route.matched_prefix,
                secure_transport=request.is_secure_transport,
            )
            headers.extend(("set-cookie", value) for value in rewritten_cookies)

        if request.method == "HEAD":
            upstream_length = upstream.header("content-length")
            if upstream_length is not None:
                headers.append(("content-length", upstream_length))
        elif upstream.status not in BODYLESS_STATUSES:
            headers.append(("content-length", str(len(body))))
        return ProxyResponse(status=upstream.status, headers=headers, body=body)

    def _rewrite_body(
        self, request: ProxyRequest, upstream: UpstreamResponse
    ) -> Optional[bytes]:
        if content_kind(upstream.content_type) is None or not upstream.body:
            return None
        try:
            return self.body_rewriter.rewrite(
                upstream.body, upstream.content_type, request.path
            )
        except RewriteFailure as e:
            # The original body is still a valid response
            log_exception_with_details(logger, "[Rewrite]", e, logging.WARNING)
            return None

    async def relay_websocket(self, websocket, path: str, query: str = "") -> None:
        """Relay a client WebSocket to the upstream its path resolves to."""
        self._count_request()
        target = f"{path}?{query}" if query else path
        try:
            route = self.resolver.resolve(target)
        except ProxyError as e:
            self._count_error()
            log_exception_with_details(logger, f"[WebSocket] {target}", e, logging.WARNING)
            await websocket.close(code=1008)
            return

        with tracer.start_as_current_span("proxy_websocket") as span:
            span.set_attribute("proxy.path", target)
            span.set_attribute("proxy.target_url", route.url)
            relayed = await self.websocket_relay.relay(
                websocket, route.url, websocket.headers.items()
            )
            if not relayed:
                self._count_error()
                span.set_attribute("proxy.error", "websocket_handshake")

    # Captured text

    def captured_text_payload(self) -> CapturedTextResponse:
        return self._payload(self.captured_text.snapshot())

    @staticmethod
    def _payload(snapshot: CapturedTextSnapshot) -> CapturedTextResponse:
        return CapturedTextResponse(
            capturedText=snapshot.text,
            lastCaptureTime=snapshot.captured_at,
            isCapturing=snapshot.refreshing,
        )

    def set_selected_choice(self, text: str) -> CapturedTextResponse:
        snapshot = self.captured_text.set_selected(text)
        logger.info(f"[Capture] Selected choice set by client ({len(text)} chars)")
        return self._payload(snapshot)

    def schedule_refresh_if_stale(self) -> bool:
        """Start a background refresh when the slot is stale. Must run inside the event loop."""
        if not self.capture_source_path:
            return False
        if not self.captured_text.is_stale():
            return False
        token = self.captured_text.begin_refresh()
        if token is None:
            return False
        # The slot reports isCapturing from here on, before the task first runs
        task = asyncio.create_task(
            self._run_refresh(token), name="captured-text-refresh"
        )
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)
        return True

    async def refresh_captured_text(self) -> bool:
        """Fetch the capture source page and store the selected text."""
        if not self.capture_source_path:
            return False
        token = self.captured_text.begin_refresh()
        if token is None:
            logger.debug("[Capture] Refresh already running")
            return False
        return await self._run_refresh(token)

    async def _run_refresh(self, token: int) -> bool:
        try:
            route = self.resolver.resolve(self.capture_source_path)
            upstream = await self.client.send(
                route,
                ProxyRequest(
                    method="GET",
                    path=self.capture_source_path,
                    headers=(("accept", "text/html"),),
                ),
            )
            html = upstream.body.decode(
                charset_of(upstream.content_type), errors="replace"
            )
            text = extract_text(html, self.capture_selector)
        except asyncio.CancelledError:
            self.captured_text.fail_refresh()
            raise
        except Exception as e:
            self.captured_text.fail_refresh()
            log_exception_with_details(logger, "[Capture]", e, logging.WARNING)
            return False

        if text is None:
            logger.warning(
                f"[Capture] Selector '{self.capture_selector}' matched nothing on "
                f"{self.capture_source_path}"
            )
        stored = self.captured_text.complete_refresh(text, token)
        if stored:
            logger.info(f"[Capture] Refreshed captured text from {self.capture_source_path}")
        return stored

    # Background tasks

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cache.sweep()
            except Exception as e:
                log_exception_with_details(logger, "[Cache]", e)

    async def _capture_loop(self, interval: float) -> None:
        while True:
            try:
                await self.refresh_captured_text()
            except Exception as e:
                log_exception_with_details(logger, "[Capture]", e)
            await asyncio.sleep(interval)

    def start_background_tasks(
        self, sweep_interval: float, capture_interval: float
    ) -> None:
        if self._background_tasks:
            return
        self._background_tasks.append(
            asyncio.create_task(self._sweep_loop(sweep_interval), name="cache-sweep")
        )
        if self.capture_source_path:
            self._background_tasks.append(
                asyncio.create_task(
                    self._capture_loop(capture_interval), name="captured-text-timer"
                )
            )
        logger.info(
            f"[Proxy] Started {len(self._background_tasks)} background task(s)"
        )

    async def stop_background_tasks(self) -> None:
        tasks = self._background_tasks + list(self._refresh_tasks)
        self._background_tasks = []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


def build_proxy_service() -> ProxyService:
    """Wire a ProxyService from the environment configuration."""
    resolver = RouteResolver(config.UPSTREAM_MAPPINGS)
    editor = ContentEditor(
        config.CONTENT_EDIT_RULES,
        exchange_rate=config.EXCHANGE_RATE,
        currency_symbol=config.CURRENCY_SYMBOL,
    )
    return ProxyService(
        resolver=resolver,
        client=UpstreamClient(
            timeout=config.UPSTREAM_TIMEOUT,
            passthrough_statuses=config.UPSTREAM_PASSTHROUGH_STATUSES,
        ),
        redirects=RedirectRewriter(resolver, config.REDIRECT_OVERRIDES),
        cookies=CookieRewriter(
            path_mode=config.COOKIE_PATH_MODE, strip_secure=config.COOKIE_STRIP_SECURE
        ),
        body_rewriter=BodyRewriter(
            resolver,
            content_editor=editor,
            redirect_overrides=config.REDIRECT_OVERRIDES,
            watchdog_page_matcher=config.WATCHDOG_PAGE_MATCHER,
            watchdog_interval_ms=config.WATCHDOG_INTERVAL_MS,
            rewrite_css_js=config.REWRITE_CSS_JS,
        ),
        cache=ResponseCache(
            static_ttl=config.CACHE_STATIC_TTL,
            dynamic_ttl=config.CACHE_DYNAMIC_TTL,
            max_entries=config.CACHE_MAX_ENTRIES,
            denylist=config.CACHE_DENYLIST,
            static_extensions=config.CACHE_STATIC_EXTENSIONS,
        ),
        captured_text=CapturedTextCache(ttl=config.CAPTURE_TTL),
        capture_source_path=config.CAPTURE_SOURCE_PATH,
        capture_selector=config.CAPTURE_SELECTOR,
        websocket_relay=WebSocketRelay(open_timeout=config.UPSTREAM_TIMEOUT),
    )


_SERVICE: Optional[ProxyService] = None
_SERVICE_LOCK = threading.Lock()


def get_proxy_service() -> ProxyService:
    global _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            _SERVICE = build_proxy_service()
        return _SERVICE
