"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront.core.config import settings
from storefront.core.errors import ShopError
from storefront.core.logging import setup_logging
from storefront.core.otel import initialize_otel, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
from storefront.core.security import log_api_access
from storefront.db.session import engine, init_db
from storefront.services.chat_platform import get_chat_platform

# Import routers
from storefront.api import commands, components, pages, webhook

setup_logging()
logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    if not settings.ALLOWED_GUILD_ID:
        logger.warning("ALLOWED_GUILD_ID is not set - every command will be refused")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    yield

    # Shutdown
    logger.info("Shutting down...")
    get_chat_platform().close()


# Create FastAPI app
app = FastAPI(
    title="Storefront Backend",
    description="Discord storefront and support desk backed by Stripe Checkout",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI and the Discord HTTP client with OpenTelemetry
instrument_fastapi(app)
instrument_httpx()

# Include routers
app.include_router(webhook.router)
app.include_router(commands.router)
app.include_router(components.router)
app.include_router(pages.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Middleware for API access logging"""
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Request failed: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, status_code, error)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    """Render domain errors as the message shown back to the actor"""
    if exc.status_code >= 500:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
