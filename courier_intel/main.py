"""
Courier Intelligence
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from courier_intel import __version__
from courier_intel.api import health, orders, vouchers
from courier_intel.api.deps import get_hasher
from courier_intel.config import get_settings
from courier_intel.errors import CourierIntelError
from courier_intel.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Fail fast: never serve a request that would hash with a missing/placeholder salt
    get_hasher()

    from courier_intel.models.base import init_db
    init_db()
    log.info("Database initialized")

    yield

    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Cross-shop delivery risk intelligence

    - HMAC-signed order and voucher webhooks from storefronts
    - Salted-hash customer pseudonymization (no raw PII stored)
    - Per-customer delivery stats and 0-100 risk score
    """,
    lifespan=lifespan
)


@app.exception_handler(CourierIntelError)
async def courier_intel_error_handler(request: Request, exc: CourierIntelError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal server error"},
    )


app.include_router(health.router, tags=["health"])
app.include_router(orders.router)
app.include_router(vouchers.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "courier_intel.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
