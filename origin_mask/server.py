import logging
from contextlib import asynccontextmanager
from typing import Sequence

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from origin_mask.proxy.service import get_proxy_service
from origin_mask.routes import router
from origin_mask.vars import (
    CACHE_SWEEP_INTERVAL,
    CAPTURE_REFRESH_INTERVAL,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
    STATIC_DIR,
    STATIC_MOUNT_PATH,
)

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = get_proxy_service()
    service.start_background_tasks(
        sweep_interval=CACHE_SWEEP_INTERVAL,
        capture_interval=CAPTURE_REFRESH_INTERVAL,
    )
    try:
        yield
    finally:
        await service.stop_background_tasks()


app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI send/receive spans so a
    proxied page shows up as one request span with its upstream child.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type")
                in ("http.response.body", "http.request")
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def parse_otlp_headers(raw: str) -> list:
    """``key=value,key=value`` to the header pairs the OTLP exporter expects."""
    headers = []
    for entry in (raw or "").split(","):
        key, sep, value = entry.partition("=")
        if sep and key.strip():
            headers.append((key.strip(), value.strip()))
    return headers


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=parse_otlp_headers(OTLP_HEADERS) or None,
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )
    logger.info(f"[Proxy] Exporting traces to {OTLP_ENDPOINT}")

FastAPIInstrumentor.instrument_app(app, excluded_urls="/health,/metrics")

app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

# Mounted before the catch-all proxy route so local files are never proxied
if STATIC_DIR:
    app.mount(STATIC_MOUNT_PATH, StaticFiles(directory=STATIC_DIR), name="static-local")
    logger.info(f"[Proxy] Serving {STATIC_DIR} at {STATIC_MOUNT_PATH}")

app.include_router(router)
