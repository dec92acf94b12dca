import uuid

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from transcriber.api.endpoints import router as api_router
from transcriber.core.config import settings
from transcriber.core.context import set_request_context
from transcriber.core.exceptions import PreconditionViolation
from transcriber.core.limiter import limiter
from transcriber.core.logging import configure_logging
from transcriber.core.security import SecurityHeadersMiddleware
from transcriber.domain.models import RequestContext

# Configure logging before creating the app instance
configure_logging()

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Image Transcriber API",
    description="Streams text transcriptions for batches of images.",
    version="1.0.0",
)

# --- Middleware Configuration ---

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Create a new request context and set it for the current request."""
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    set_request_context(RequestContext(correlation_id=correlation_id))
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


app.add_middleware(SecurityHeadersMiddleware)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )


@app.exception_handler(PreconditionViolation)
async def precondition_violation_handler(request: Request, exc: PreconditionViolation):
    logger.error("api.precondition_violation", error=str(exc), path=request.url.path)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    logger.info(
        "Application startup",
        model=settings.GEMINI_MODEL,
        max_concurrency=settings.MAX_CONCURRENCY,
        concurrency_mode=settings.CONCURRENCY_MODE,
    )


@app.get("/health", tags=["Monitoring"])
@limiter.limit("10/minute")
async def health_check(request: Request):
    """Health check endpoint to verify service is running."""
    return {
        "status": "ok",
        "model": settings.GEMINI_MODEL,
        "max_concurrency": settings.MAX_CONCURRENCY,
        "concurrency_mode": settings.CONCURRENCY_MODE,
    }


app.include_router(api_router, prefix="/api")
