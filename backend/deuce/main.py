import asyncio
from contextlib import asynccontextmanager
import logging
import os

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import disputes, matches, ratings, recalculations
from .config import API_PREFIX, AUTO_APPROVE_AFTER_HOURS, ENABLE_BACKGROUND_WORKERS
from .container import Services, build_services
from .db import get_sessionmaker
from .exceptions import ConsistencyViolation, DomainException, ProblemDetail
from .services.lifecycle import auto_approve_results
from .utils.sentry import alert_operators, init_sentry

logger = logging.getLogger(__name__)

init_sentry()

# -----------------------------------------------------------------------------
# CORS configuration
# -----------------------------------------------------------------------------
allowed_origins_raw = os.getenv("ALLOWED_ORIGINS", "").strip()
ALLOWED_ORIGINS = [o.strip() for o in allowed_origins_raw.split(",") if o.strip()]
ALLOW_CREDENTIALS = os.getenv("ALLOW_CREDENTIALS", "true").lower() == "true"

# Fail fast if misconfigured: credentials + wildcard origins is unsafe
if "*" in ALLOWED_ORIGINS:
    raise ValueError(
        "ALLOWED_ORIGINS cannot include '*' (wildcard). Specify explicit, trusted origins."
    )

AUTO_APPROVE_POLL_SECONDS = 60.0


async def _auto_approve_forever(services: Services, stop: asyncio.Event) -> None:
    session_factory = services.worker.session_factory
    while not stop.is_set():
        try:
            async with session_factory() as session:
                await auto_approve_results(session)
                await session.commit()
        except Exception:
            logger.exception("Auto-approval sweep failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=AUTO_APPROVE_POLL_SECONDS)
        except asyncio.TimeoutError:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(get_sessionmaker())
        app.state.services = services

    stop = asyncio.Event()
    tasks = []
    if ENABLE_BACKGROUND_WORKERS:
        tasks = [
            asyncio.create_task(services.worker.run_forever(stop)),
            asyncio.create_task(services.dispatcher.run_forever(stop)),
            asyncio.create_task(_auto_approve_forever(services, stop)),
        ]
        logger.info(
            "Background workers started (auto-approve after %.1fh)",
            AUTO_APPROVE_AFTER_HOURS,
        )
    try:
        yield
    finally:
        stop.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Background workers stopped")


# -----------------------------------------------------------------------------
# FastAPI app
# -----------------------------------------------------------------------------
app = FastAPI(
    title="Deuce Match Engine API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

logger.info("API_PREFIX=%r", API_PREFIX)


# -----------------------------------------------------------------------------
# Health checks
# -----------------------------------------------------------------------------
@app.get("/healthz", tags=["health"])  # Unprefixed for reverse proxy / uptime checks
def root_healthz():
    return {"status": "ok"}


# -----------------------------------------------------------------------------
# Error handling
# -----------------------------------------------------------------------------
def _problem_response(exc: DomainException) -> JSONResponse:
    problem = ProblemDetail(
        type=exc.type,
        title=exc.title,
        detail=exc.detail,
        status=exc.status_code,
        code=exc.code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(),
        media_type="application/problem+json",
    )


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    return _problem_response(exc)


@app.exception_handler(ConsistencyViolation)
async def consistency_violation_handler(
    request: Request, exc: ConsistencyViolation
) -> JSONResponse:
    logger.error("Consistency violation on %s: %s", request.url.path, exc)
    alert_operators(exc, code=exc.code, path=request.url.path)
    return _problem_response(exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    code = getattr(exc, "code", f"http_{exc.status_code}")
    problem = ProblemDetail(
        title=detail,
        detail=detail,
        status=exc.status_code,
        code=code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(),
        media_type="application/problem+json",
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=(type(exc), exc, exc.__traceback__))
    problem = ProblemDetail(
        title="Internal Server Error",
        status=500,
        detail=str(exc),
        code="internal_server_error",
    )
    return JSONResponse(
        status_code=500,
        content=problem.model_dump(),
        media_type="application/problem+json",
    )


# -----------------------------------------------------------------------------
# Routers
# -----------------------------------------------------------------------------
api_router = APIRouter(prefix=API_PREFIX, tags=["meta"])


@api_router.get("/healthz", tags=["health"])
def api_healthz():
    return {"status": "ok"}


@api_router.get("")
def api_root():
    return {"message": "Deuce Match Engine API. See /docs."}


v0_router = APIRouter(prefix="/v0")
v0_router.include_router(matches.router)
v0_router.include_router(disputes.router)
v0_router.include_router(ratings.router)
v0_router.include_router(recalculations.router)

api_router.include_router(v0_router)
app.include_router(api_router)
