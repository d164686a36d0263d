from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import structlog
import time
from contextlib import asynccontextmanager
from datetime import datetime

from .config import settings
from .database import db_manager
from .error_handling import ConfigurationError
from .routes import router
from .background_tasks import background_task_manager
from .orchestrator import agent
from .telemetry import log_event

logging.basicConfig(format="%(message)s", level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Application lifespan manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    startup_start_time = time.time()
    logger.info("Starting Shield Agent")

    try:
        await db_manager.connect()

        if not agent.is_configured:
            try:
                agent.load()
            except ConfigurationError as e:
                # The API still serves health and status without a deployment
                logger.error("Deployment configuration unavailable", error=str(e))

        if agent.is_configured and settings.ENABLE_BACKGROUND_SCAN:
            await background_task_manager.start()
            logger.info("Background tasks started")

        startup_duration = time.time() - startup_start_time
        chains = [chain.chain_name for chain in agent.deployment.chains] if agent.is_configured else []

        logger.info("Shield Agent ready",
                   chains=chains,
                   startup_time_seconds=round(startup_duration, 2))

        await log_event("shield_agent_started", {
            "chains": chains,
            "startup_time_seconds": startup_duration,
            "version": "1.0.0"
        })

        yield

    except Exception as e:
        logger.error("Failed to start Shield Agent", error=str(e))
        raise

    logger.info("Shutting down Shield Agent")

    try:
        await background_task_manager.stop()
        await agent.close()
        await db_manager.disconnect()

        await log_event("shield_agent_stopped", {
            "shutdown_at": datetime.utcnow().isoformat()
        })

        logger.info("Shield Agent shutdown complete")

    except Exception as e:
        logger.error("Error during shutdown", error=str(e))

# Create FastAPI app
app = FastAPI(
    title="Shield Agent",
    description="DeFi risk assessment and automated vault defense",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info("Request received",
               method=request.method,
               url=str(request.url),
               client_ip=request.client.host if request.client else "unknown")

    try:
        response = await call_next(request)

        process_time = time.time() - start_time

        logger.info("Request completed",
                   method=request.method,
                   url=str(request.url),
                   status_code=response.status_code,
                   process_time=round(process_time, 3))

        response.headers["X-Process-Time"] = str(process_time)

        return response

    except Exception as e:
        process_time = time.time() - start_time

        logger.error("Request failed",
                    method=request.method,
                    url=str(request.url),
                    error=str(e),
                    process_time=round(process_time, 3))

        await log_event("request_error", {
            "method": request.method,
            "url": str(request.url),
            "error": str(e)
        }, "error")

        raise

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""

    logger.error("Unhandled exception",
                method=request.method,
                url=str(request.url),
                error=str(exc),
                error_type=type(exc).__name__)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "timestamp": datetime.utcnow().isoformat(),
            "request_id": id(request)
        }
    )

# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for HTTP exceptions"""

    logger.warning("HTTP exception",
                  method=request.method,
                  url=str(request.url),
                  status_code=exc.status_code,
                  detail=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "timestamp": datetime.utcnow().isoformat()
        }
    )

app.include_router(router)

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": "Shield Agent",
        "version": "1.0.0",
        "description": "DeFi risk scoring, anomaly detection and automated vault defense",
        "status": "operational",
        "environment": settings.ENV,
        "timestamp": datetime.utcnow().isoformat(),
        "endpoints": {
            "health": "/api/shield/health",
            "status": "/api/shield/status",
            "scan": "/api/shield/scan",
            "risk_event": "/api/shield/events/risk-updated",
            "actions": "/api/shield/actions?limit={n}",
            "docs": "/docs"
        },
        "scan_interval_seconds": settings.SCAN_INTERVAL_SECONDS
    }
