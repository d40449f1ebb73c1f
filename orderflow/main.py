"""
Order Flow service
Rule engine and API for the print shop's order workflow
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import subprocess
import os

from orderflow import __version__
from orderflow.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from orderflow.core_settings import get_settings
from orderflow.api.routes import router as orders_router
from orderflow.api.notifications import router as notifications_router
from orderflow.api.admin import router as admin_router
from orderflow.api.realtime import active_connections, router as realtime_router
from orderflow.application.notifications import NotificationService
from orderflow.application.schemas import TokenRequest
from orderflow.application.service import AggregateRegistry
from orderflow.auth_local import create_access_token
from orderflow.domain.errors import OrderFlowError
from orderflow.infrastructure import db
from orderflow.infrastructure.change_feed import ChangeFeed
from orderflow.infrastructure.inventory import InventoryClient
from orderflow.infrastructure.storage import StorageClient
from orderflow.infrastructure.woocommerce import WooCommerceClient

settings = get_settings()

# Service configuration
SERVICE_NAME = "orderflow-service"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", __version__)
SERVICE_DESCRIPTION = "Print shop order workflow: stages, departments, outsourcing and dispatch"

# Setup structured logging
setup_logging(service_name=SERVICE_NAME, level=settings.LOG_LEVEL)

logger = get_logger(__name__)

change_feed = ChangeFeed()
change_feed.install(db.SessionLocal)


def configure_services(app: FastAPI, session_factory=None) -> None:
    """Wire the aggregate registry and the outbound clients onto ``app.state``."""
    session_factory = session_factory or db.SessionLocal
    timeout = settings.HTTP_TIMEOUT_SECONDS
    storage = StorageClient(settings.STORAGE_SERVICE_URL, settings.STORAGE_BUCKET, timeout=timeout)
    app.state.registry = AggregateRegistry(
        session_factory,
        notifications=NotificationService(session_factory),
        storage=storage,
        change_feed=change_feed,
        cache_ttl=settings.ORDERS_CACHE_TTL_SECONDS,
        debounce_seconds=settings.REFETCH_DEBOUNCE_SECONDS,
        delete_batch_size=settings.DELETE_BATCH_SIZE,
        max_services=settings.MAX_ACTIVE_USERS,
        idle_seconds=settings.SERVICE_IDLE_SECONDS,
    )
    app.state.woocommerce = WooCommerceClient(
        settings.WOOCOMMERCE_FUNCTION_URL, settings.WOOCOMMERCE_API_KEY, timeout=timeout,
    )
    app.state.inventory = InventoryClient(settings.INVENTORY_SERVICE_URL, timeout=timeout)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    # Startup
    try:
        # Run database migrations
        logger.info("Running database migrations")
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=os.path.join(os.path.dirname(__file__), ".."),
            capture_output=True,
            text=True,
            check=False
        )
        if result.returncode != 0:
            logger.warning(f"Migration output: {result.stderr}")
        else:
            logger.info("Database migrations completed")
    except Exception as e:
        logger.error(f"Migration error: {e}")

    # Initialize database models
    try:
        db.init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME}")
    await app.state.registry.shutdown()


# Create FastAPI application
app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)
configure_services(app)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(OrderFlowError)
async def order_flow_error_handler(request: Request, exc: OrderFlowError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Initialize health checks
health_service = ServiceHealth(SERVICE_NAME, lambda: db.engine, SERVICE_VERSION, gauges={
    "realtime_connections": lambda: len(active_connections),
    "cached_snapshots": lambda: len(app.state.registry.cache),
    "active_users": lambda: app.state.registry.active_users,
})
app.include_router(health_service.create_health_router())

# Include business logic routes
app.include_router(orders_router)
app.include_router(notifications_router)
app.include_router(admin_router)
app.include_router(realtime_router)


@app.post("/auth/token")
async def issue_token(payload: TokenRequest):
    """Development tokens; production tokens come from the identity provider."""
    return {"access_token": create_access_token(payload.username), "token_type": "bearer"}


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }


@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "orders": "/orders",
            "changes": "/ws/changes",
            "docs": "/api/docs"
        }
    }
