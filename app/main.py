import secrets
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import generate_request_id, get_logger, request_id_var, setup_logging
from app.routers import analytics as analytics_router
from app.routers import check_in as check_in_router
from app.routers import live as live_router
from app.routers import trending as trending_router
from app.services.container import ServiceContainer, build_container, get_container
from app.core.errors import (
    AdminAuthError,
    CircuitNotFoundError,
    MoodPulseException,
    moodpulse_exception_handler,
    validation_exception_handler,
    unhandled_exception_handler,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    # A container placed on app.state beforehand (tests) is used as-is.
    owned = getattr(app.state, "container", None) is None
    if owned:
        app.state.container = build_container(settings)
        if settings.AUTO_CREATE_TABLES:
            app.state.container.create_all()
    logger.info("Starting MoodPulse API", extra={"action": "startup"})
    yield
    if owned:
        app.state.container.shutdown()
        app.state.container = None
    logger.info("MoodPulse API stopped", extra={"action": "shutdown"})


app = FastAPI(
    title="MoodPulse API",
    description=(
        "**Anonymous daily emotional check-ins**\n\n"
        "One check-in per device per 24 hours, consecutive-day streaks and "
        "recency-weighted trending keywords from check-in notes.\n\n"
        "All error responses follow the `{code, message, details}` envelope."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Device-ID", "X-Request-ID", "Retry-After"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tag every request with a correlation id and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    request_id_var.set(request_id)

    start = time.monotonic()
    response = await call_next(request)
    duration_ms = round((time.monotonic() - start) * 1000, 1)
    response.headers["X-Request-ID"] = request_id

    logger.info(
        "%s %s %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
        extra={"action": "request", "duration_ms": duration_ms},
    )
    return response


# --- Exception handlers (most specific first) ---
app.add_exception_handler(MoodPulseException, moodpulse_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Routers ---
app.include_router(check_in_router.router)
app.include_router(trending_router.router)
app.include_router(analytics_router.router)
app.include_router(live_router.router)


@app.get("/health", tags=["health"], summary="Health check")
def health(container: ServiceContainer = Depends(get_container)):
    """
    Returns `{"status": "ok", "db": "ok"}` when both the API and the durable
    store are reachable. Returns HTTP 503 if the store is down.
    """
    try:
        container.check_in_service.check_ins.ping()
        db_status = "ok"
    except Exception:
        db_status = "unreachable"

    circuits = {name: snap["state"] for name, snap in container.breakers.snapshot().items()}
    if db_status != "ok":
        return JSONResponse(
            status_code=503,
            content={"status": "error", "db": db_status, "circuits": circuits},
            headers={"Retry-After": str(container.settings.RETRY_AFTER_SECONDS)},
        )
    return {
        "status": "ok",
        "db": "ok",
        "env": container.settings.APP_ENV,
        "circuits": circuits,
        "event_bus": container.event_bus.stats(),
        "live": container.broadcaster.stats(),
    }


@app.get("/health/circuits", tags=["health"], summary="Circuit breaker state and counters")
def circuits(container: ServiceContainer = Depends(get_container)):
    return {"circuits": container.breakers.snapshot()}


def _require_admin(container: ServiceContainer, token: Optional[str]) -> None:
    expected = container.settings.SECRET_KEY
    if not token or not secrets.compare_digest(token, expected):
        raise AdminAuthError()


def _circuit(container: ServiceContainer, name: str):
    if name not in container.breakers.names():
        raise CircuitNotFoundError(name)
    return container.breakers.get(name)


@app.post("/health/circuits/{name}/open", tags=["health"], summary="Force a circuit open")
def force_open(
    name: str,
    container: ServiceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None),
):
    _require_admin(container, x_admin_token)
    breaker = _circuit(container, name)
    breaker.force_open()
    return breaker.snapshot()


@app.post("/health/circuits/{name}/close", tags=["health"], summary="Force a circuit closed")
def force_close(
    name: str,
    container: ServiceContainer = Depends(get_container),
    x_admin_token: Optional[str] = Header(default=None),
):
    _require_admin(container, x_admin_token)
    breaker = _circuit(container, name)
    breaker.force_close()
    return breaker.snapshot()
