import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from promptwatch.api.v1.router import api_v1_router
from promptwatch.core.config import settings, validate_settings_for_production
from promptwatch.core.logging import setup_logging
from promptwatch.core.metrics import PrometheusMiddleware, metrics_response
from promptwatch.core.middleware import RequestLoggingMiddleware
from promptwatch.core.rate_limit import limiter
from promptwatch.core.sentry import init_sentry
from promptwatch.db.postgres import async_session_factory, engine
from promptwatch.execution.broadcaster import UpdateBroker
from promptwatch.execution.dispatcher import Dispatcher, global_semaphore_from_settings
from promptwatch.execution.errors import PersistenceError, ValidationError
from promptwatch.execution.runner import ExecutionRunner
from promptwatch.execution.store import ExecutionStore

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    logger.info("Starting promptwatch...")

    broker = UpdateBroker()
    store = ExecutionStore(async_session_factory)
    dispatcher = Dispatcher(store, broker, global_semaphore=global_semaphore_from_settings())
    app.state.broker = broker
    app.state.store = store
    app.state.runner = ExecutionRunner(dispatcher)

    yield

    # Shutdown
    await app.state.runner.shutdown()
    await engine.dispose()
    logger.info("promptwatch shut down")


app = FastAPI(
    title="promptwatch",
    description="Brand visibility monitoring across language-model providers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(PersistenceError)
async def _store_unavailable_handler(request: Request, exc: PersistenceError):
    logger.error("Execution store unavailable on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Execution store unavailable"})


@app.exception_handler(ValidationError)
async def _missing_entity_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


# Rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Request logging + metrics middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(PrometheusMiddleware)

# CORS: allowed_origins is comma-separated
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/health")
async def health():
    runner = getattr(app.state, "runner", None)
    return {"status": "ok", "background_tasks": runner.active if runner else 0}


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
