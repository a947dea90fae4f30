from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from config import settings
from services.errors import (
    SettlementError,
    NegativeBalanceError,
)
import asyncio
import uvicorn
import logging
import traceback
import os

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import routes
from routes import (
    orders_router,
    wallets_router,
    riders_router,
    admin_router,
)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Ledgerline - Order settlement and wallet ledger API",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,
)

_worker_task = None


def _error_status(exc: SettlementError) -> int:
    if isinstance(exc, LookupError):
        return 404
    if isinstance(exc, NegativeBalanceError):
        return 400
    return 409


# Settlement errors mapped onto HTTP statuses
@app.exception_handler(SettlementError)
async def settlement_exception_handler(request: Request, exc: SettlementError):
    code = _error_status(exc)
    if code != 404:
        logger.warning(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=code,
        content={
            "success": False,
            "message": str(exc),
            "error": type(exc).__name__,
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": str(exc),
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {str(exc)}", exc_info=True)
    logger.error(f"Traceback: {traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "detail": str(exc) if settings.DEBUG else "An error occurred"
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Validation error",
            "detail": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                for err in exc.errors()
            ],
        },
    )


# Health check endpoint
@app.get("/")
def root():
    return {
        "success": True,
        "message": "Ledgerline API is running",
        "version": settings.APP_VERSION
    }


@app.get("/health")
def health_check():
    return {
        "success": True,
        "message": "Service is healthy",
        "status": "ok"
    }


@app.get("/health/db")
def health_check_db():
    """Check database connectivity"""
    from database import check_db_connection
    if check_db_connection():
        return {
            "success": True,
            "message": "Database connection successful",
            "status": "ok"
        }
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "message": "Database connection failed",
            "status": "error"
        },
    )


# Include routers with /api prefix
app.include_router(orders_router, prefix="/api")
app.include_router(wallets_router, prefix="/api")
app.include_router(riders_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


# Startup event
@app.on_event("startup")
async def startup_event():
    global _worker_task
    logger.info(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} is starting...")
    logger.info(f"📚 Documentation available at: /docs")

    # Initialize Redis cache
    try:
        from utils.cache import wallet_cache
        if settings.REDIS_ENABLED:
            if wallet_cache.ping():
                logger.info("✅ Redis wallet cache is connected and ready!")
            else:
                logger.warning("⚠️ Redis is configured but not reachable - caching disabled")
        else:
            logger.info("ℹ️ Redis caching is disabled (REDIS_ENABLED=False)")
    except Exception as e:
        logger.warning(f"⚠️ Redis initialization check failed: {e}")

    # Initialize database tables
    try:
        from database import init_db
        logger.info("📊 Initializing database tables...")
        init_db()
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {str(e)}", exc_info=True)

    if settings.RECONCILE_WORKER_ENABLED:
        from workers.reconciliation_worker import reconciliation_worker
        _worker_task = asyncio.create_task(reconciliation_worker())
    else:
        logger.info("ℹ️ Background reconciliation worker is disabled")

    logger.info("✅ API ready to receive requests")


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    if _worker_task is not None:
        _worker_task.cancel()
    logger.info("👋 Shutting down Ledgerline API...")


# Run the application
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
        log_level="info"
    )
