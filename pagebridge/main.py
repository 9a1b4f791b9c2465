from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.trace import SpanKind
from starlette.requests import Request

from pagebridge.api.router import api_router
from pagebridge.core.config import get_settings
from pagebridge.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from pagebridge.services.repository import RepositoryUnavailableError, get_repository
from pagebridge.services.sanity_client import get_sanity_client

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        await get_repository().ensure_schema()
    except RepositoryUnavailableError as exc:
        logger.warning("schema not ensured at startup: %s", exc)
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        await get_sanity_client().close()
        get_sanity_client.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    with tracer.start_as_current_span(f"{request.method} {request.url.path}", kind=SpanKind.SERVER) as span:
        span.set_attribute("http.request.method", request.method)
        span.set_attribute("url.path", request.url.path)
        response = await call_next(request)
        span.set_attribute("http.response.status_code", response.status_code)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
