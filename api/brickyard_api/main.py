from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from brickyard_api.api.deps import to_http_exception
from brickyard_api.api.router import api_router
from brickyard_api.core.config import Settings, get_settings
from brickyard_api.core.telemetry import setup_api_telemetry, shutdown_api_telemetry
from brickyard_api.services.errors import PipelineError, TransientDependencyError
from brickyard_api.services.repository import get_repository

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(instance: FastAPI):
        try:
            yield
        finally:
            shutdown_api_telemetry(instance, instance.state.telemetry)
            await get_repository().close()
            get_repository.cache_clear()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.telemetry = setup_api_telemetry(app, settings)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started_at = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "http request id=%s method=%s path=%s status=%s worker=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            request.headers.get("X-Worker-Id", "-"),
            (time.perf_counter() - started_at) * 1000.0,
        )
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        # Raised outside a route's own translation, e.g. by a dependency opening the pool.
        if isinstance(exc, TransientDependencyError):
            logger.warning("dependency unavailable method=%s path=%s error=%s", request.method, request.url.path, exc)
        http_exc = to_http_exception(exc)
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    app.include_router(api_router)
    return app


app = create_app()
