"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from scriptflow import __version__
from scriptflow.api import admin, health, public, scripts
from scriptflow.config import get_settings
from scriptflow.db.session import init_db
from scriptflow.middleware.rate_limit import SubmissionRateLimitExceeded, limiter

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting ScriptFlow...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if not settings.api_secret_key:
        logger.warning("API_SECRET_KEY is not set, the submission endpoint is unauthenticated")

    logger.info("ScriptFlow started successfully")

    yield

    logger.info("Shutting down ScriptFlow...")


app = FastAPI(
    title="ScriptFlow",
    description="""
## Reel-to-script generation

Submit a reference reel and an idea; a new short-video script in the reel's
style is generated asynchronously, rendered to an image and delivered to the
subscriber through ManyChat.

### Authentication
`POST /api/v1/script/generate` requires the shared secret in the `X-API-Key`
header. Admin routes require `X-Admin-Key`.

### Rate Limiting
Submissions are limited per subscriber (default 100 per 15 minutes).
Public script pages are limited per client IP.
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed input as 400 with a readable message."""
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))

    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid input",
            "detail": "; ".join(messages),
            "code": "INVALID_INPUT",
        },
    )


@app.exception_handler(SubmissionRateLimitExceeded)
async def submission_rate_limit_handler(request: Request, exc: SubmissionRateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "detail": "Please wait before requesting another script",
            "code": "RATE_LIMIT_EXCEEDED",
        },
        headers={"Retry-After": str(exc.decision.retry_after_seconds)},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# Include routers
app.include_router(health.router)
app.include_router(scripts.router)
app.include_router(public.router)
app.include_router(admin.router)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": "ScriptFlow",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "scriptflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
