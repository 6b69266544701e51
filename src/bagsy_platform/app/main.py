"""FastAPI application entry point for the Bagsy Platform API."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bagsy_platform.app.config import get_settings
from bagsy_platform.domain.errors import AppError
from bagsy_platform.infra.database import async_session, init_db
from bagsy_platform.services.delegate_queue import DelegateTaskQueue
from bagsy_platform.services.verification_ledger import load_verification_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database, verification config and the delegate worker."""
    await init_db()

    async with async_session() as db:
        app.state.verification_config = await load_verification_config(db)

    queue = DelegateTaskQueue(
        async_session,
        delay_seconds=settings.delegate_response_delay_seconds,
    )
    app.state.delegate_queue = queue
    queue.start()
    yield
    await queue.stop()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Bagsy Platform API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode for LAN/IP access
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: [%d] %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.http_status,
        content={"code": exc.code, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from bagsy_platform.app.routes.bookings import router as bookings_router, offers_router
from bagsy_platform.app.routes.verification import router as verification_router, delegate_router

app.include_router(bookings_router)
app.include_router(offers_router)
app.include_router(verification_router)
app.include_router(delegate_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "bagsy-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "bagsy_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
