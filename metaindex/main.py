from contextlib import asynccontextmanager, suppress
import asyncio
import logging
import time

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from metaindex.api.router import api_router
from metaindex.core.config import get_settings
from metaindex.core.telemetry import TelemetryRuntime, configure_logging, setup_api_telemetry, shutdown_api_telemetry
from metaindex.jobs.recovery import RecoveryScanner
from metaindex.services.events import get_event_processor
from metaindex.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


async def _recover_on_startup() -> None:
    try:
        await RecoveryScanner(get_event_processor()).run()
    except Exception:
        logger.exception("startup recovery scan failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    recovery_task: asyncio.Task[None] | None = None
    if settings.recover_on_startup:
        recovery_task = asyncio.create_task(_recover_on_startup(), name="metaindex-recovery")
    try:
        yield
    finally:
        if recovery_task is not None and not recovery_task.done():
            recovery_task.cancel()
            with suppress(asyncio.CancelledError):
                await recovery_task
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        # Workers go first; they still write to the repository.
        await get_event_processor().close()
        get_event_processor.cache_clear()
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
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
