"""
FastAPI Application Entry Point
Custom Variant Service - provisioning and cleanup of custom-size Shopify variants
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
from dotenv import load_dotenv
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable

from database import DATABASE_URL, init_db, check_db_health, get_pool_status
from routers import custom_variants
from routes.admin_routes import router as admin_router
from services.cleanup_scheduler import CleanupScheduler
from services.error_tracker import ErrorTracker
from services.session_store import SessionStore
from services.shopify_client import ShopifyClient
from services.storage import storage
from services.variant_provisioner import VariantProvisioner
from settings import CLEANUP_SCHEDULER_ENABLED

# Load environment variables
load_dotenv()


# ---- Logging setup (JSON; good for Cloud Run / Fly) ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Include traceback if present
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JsonFormatter())

root = logging.getLogger()
root.handlers = [handler]
root.setLevel(LOG_LEVEL)

# Optional: crank down noisy libs
logging.getLogger("uvicorn.access").setLevel(logging.INFO)
logging.getLogger("uvicorn.error").setLevel(logging.INFO)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # bump to INFO to see SQL
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Custom Variant Service API",
    description="Custom-size variant provisioning and automatic cleanup for Shopify stores",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

# ---- Service wiring (one instance of each per process) ----
session_store = SessionStore()
error_tracker = ErrorTracker(storage)
app.state.storage = storage
app.state.session_store = session_store
app.state.client_factory = ShopifyClient.from_credentials
app.state.provisioner = VariantProvisioner(storage, session_store, ShopifyClient.from_credentials)
app.state.cleanup_scheduler = CleanupScheduler(
    storage,
    session_store,
    ShopifyClient.from_credentials,
    error_tracker,
)

cors_origins_raw = os.getenv("CORS_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_origins_raw.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials="*" not in cors_origins,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)
# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        start = time.time()

        # Attach request_id so handlers can use it
        request.state.request_id = request_id

        logger.info(
            f"REQ {request.method} {request.url.path} "
            f"ip={request.client.host if request.client else '-'} rid={request_id}"
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Uncaught exception in request pipeline rid={request_id}")
            raise

        dur_ms = int((time.time() - start) * 1000)
        logger.info(
            f"RES {request.method} {request.url.path} "
            f"status={response.status_code} durMs={dur_ms} rid={request_id}"
        )
        # Make request id visible to clients
        response.headers["X-Request-Id"] = request_id
        return response

app.add_middleware(RequestIDMiddleware)


@app.get("/")
async def root_endpoint():
    return {"ok": True, "service": "custom-variant-service"}

@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Comprehensive health check including database and scheduler status."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "cleanup_scheduler": {"running": app.state.cleanup_scheduler.is_running},
        "timestamp": time.time(),
    }


@app.get("/api/health/pool")
async def api_health_pool():
    """Get database connection pool status."""
    pool_status = await get_pool_status()
    return {
        "pool": pool_status,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"success": False, "detail": exc.errors(), "error": "Validation failed", "errorType": "validation"},
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# --- Routers ---
app.include_router(custom_variants.router, prefix="/api", tags=["custom-variants"])
app.include_router(admin_router, prefix="/api", tags=["admin"])

# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting Custom Variant Service API...")
    init_default = "true" if DATABASE_URL.startswith("sqlite") else "false"
    if os.getenv("INIT_DB_ON_STARTUP", init_default).lower() == "true":
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=120)
            logger.info("✅ Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("❌ DB init timed out after 120s, continuing without init")
        except Exception as e:
            logger.error(f"❌ DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")

    if CLEANUP_SCHEDULER_ENABLED:
        app.state.cleanup_scheduler.start()
    else:
        logger.info("Cleanup scheduler disabled (CLEANUP_SCHEDULER_ENABLED=false)")

@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Custom Variant Service API...")
    await app.state.cleanup_scheduler.stop()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") != "production"
    )
