from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .database import engine, Base, get_db
from .exceptions import LinkError, PasswordRequiredError
from .routes import router as api_router
from .public import router as public_router
from .redis_client import RedisService
from .schemas import HealthResponse
from .logging_config import setup_logging, get_logger, set_request_id

# Initialize structured logging
setup_logging(settings.DEBUG)
logger = get_logger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID to each request for tracing."""

    async def dispatch(self, request: Request, call_next):
        rid = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting WRX Links API...")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    yield

    logger.info("Shutting down WRX Links API...")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="URL shortening with access policies and click analytics",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)

# Request ID middleware for tracing
app.add_middleware(RequestIdMiddleware)

# CORS middleware - configured via environment
if settings.CORS_ORIGINS == ["*"]:
    logger.warning("CORS configured to allow all origins. Set CORS_ORIGINS for production.")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api", tags=["API"])


@app.get("/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint."""
    redis_healthy = RedisService.health_check()

    try:
        db.execute(text("SELECT 1"))
        db_healthy = True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        db_healthy = False

    status = "healthy" if (db_healthy and redis_healthy) else "degraded"

    return HealthResponse(
        status=status,
        database=db_healthy,
        redis=redis_healthy,
        version=settings.APP_VERSION
    )


# Catch-all slug routes go last so they never shadow the API
app.include_router(public_router, tags=["Public"])


# Exception handlers
@app.exception_handler(PasswordRequiredError)
async def password_required_handler(request: Request, exc: PasswordRequiredError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.message, "requiresPassword": True, "slug": exc.slug}
    )


@app.exception_handler(LinkError)
async def link_error_handler(request: Request, exc: LinkError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code}
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code or 500,
        content={"detail": exc.detail or "HTTP error"},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.error(f"Server error: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})
