"""
CallBridge - Main Application Entry Point

Connects Twilio phone calls to ElevenLabs conversational agents, with
GoHighLevel as the tenants' CRM and calendar.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from callbridge import __version__
from callbridge.core.config import settings
from callbridge.core.logging import setup_logging, get_logger
from callbridge.core.exceptions import CallBridgeException
from callbridge.api.middleware import assign_request_id
from callbridge.api.routes import admin, health, media_stream, reports, tenants, tools, webhooks
from callbridge.db import initialize_repository, close_repository

# Setup logging
setup_logging()
logger = get_logger(__name__)


def check_required_settings() -> None:
    """Exit the process when carrier or voice credentials are missing"""
    missing = settings.missing_required()
    if missing:
        for name in missing:
            logger.critical(f"Missing required configuration: {name}")
        raise SystemExit(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events
    """
    # Startup
    logger.info("=" * 60)
    logger.info("Starting CallBridge")
    logger.info(f"Version: {__version__}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Public URL: {settings.public_base_url}")
    logger.info(f"Storage Backend: {settings.storage_backend}")
    logger.info("=" * 60)

    check_required_settings()

    if not await initialize_repository():
        logger.critical("Tenant store could not be initialized")
        raise SystemExit(1)
    logger.info("All services initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down CallBridge")

    await close_repository()
    if settings.storage_backend.lower() == "redis":
        from callbridge.services.redis_service import close_redis
        await close_redis()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="CallBridge API",
    description="""
    ## Telephony to Voice AI Relay

    Bridges Twilio calls to ElevenLabs conversational agents for many tenants.

    ### Features

    - **Inbound Calls**: Route callers to the tenant's voice agent by the number they dialed
    - **Outbound Calls**: Place personalized AI calls from a tenant's number
    - **Live Transfer**: Hand a caller to a human through a conference
    - **CRM Integration**: Caller personalization and appointment booking in GoHighLevel
    - **Agent Metrics**: Monthly per-agent call and booking reports
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(assign_request_id)


def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


# Custom Exception Handlers
@app.exception_handler(CallBridgeException)
async def callbridge_exception_handler(request: Request, exc: CallBridgeException):
    """Handle custom CallBridge exceptions"""
    logger.warning(f"CallBridgeException: {exc.error_code} - {exc.message}")
    if exc.request_id is None:
        exc.request_id = _request_id(request)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_dict())
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    content = {"error": str(exc.detail)}
    if _request_id(request):
        content["requestId"] = _request_id(request)
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies and parameters are 400s"""
    content = {"error": "Invalid request", "details": jsonable_encoder(exc.errors())}
    if _request_id(request):
        content["requestId"] = _request_id(request)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    content = {"error": "An unexpected error occurred"}
    if settings.debug:
        content["details"] = {"exception": str(exc)}
    if _request_id(request):
        content["requestId"] = _request_id(request)
    return JSONResponse(status_code=500, content=content)


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(media_stream.router)
app.include_router(tenants.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")
app.include_router(reports.router, prefix="/api/v1")
app.include_router(tools.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "CallBridge",
        "version": __version__,
        "docs": "/docs",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callbridge.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug
    )
