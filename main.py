"""
Recipes Backend - auth token lifecycle and Paystack subscriptions
"""

from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Optional
import asyncio
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

# Import routers
from auth import auth_router
from routers.payments_router import payments_router
from utils.rate_limit import RateLimiterMiddleware
from database import init_db
from config import Settings, settings
from errors import AppError
from services.container import AppServices, build_services

# ============================================================================
# SHARED UTILITIES
# ============================================================================

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Normalized JSON response helpers
from utils.responses import app_error_response, error_response, success_response


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return error_response("internal_error", status=500, message="Internal Server Error")


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""

    def __init__(self, app, enforce_hsts: bool = False):
        super().__init__(app)
        self.enforce_hsts = enforce_hsts

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # JSON API only: nothing may be framed, scripted or embedded
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Strict-Transport-Security only where HTTPS is guaranteed
        if self.enforce_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        # X-Frame-Options: Prevent clickjacking attacks
        response.headers["X-Frame-Options"] = "DENY"

        # X-Content-Type-Options: Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


async def run_grace_sweeps(services: AppServices, interval_seconds: float) -> None:
    """Cancel past-due subscriptions whose grace period ran out, once per interval."""
    while True:
        try:
            await services.subscriptions.expire_grace_periods()
        except Exception as e:
            logger.error(f"Grace period sweep failed: {e}\n{traceback.format_exc()}")
        await asyncio.sleep(interval_seconds)


def create_app(services: Optional[AppServices] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Build the application. Pass prebuilt services to run against other
    backends (tests); otherwise they are built from settings at startup.
    """
    config = services.config if services is not None else (config or settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(config)
        try:
            await init_db(app.state.services.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise
        if not config.jwt_access_secret or not config.jwt_refresh_secret:
            logger.warning("JWT secrets are not set; token issuance will fail")
        if not config.paystack_secret_key:
            logger.warning("PAYSTACK_SECRET_KEY is not set; payments and webhooks are disabled")
        app.state.grace_sweeper = asyncio.create_task(
            run_grace_sweeps(app.state.services, config.grace_sweep_interval_seconds)
        )
        yield
        app.state.grace_sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.grace_sweeper
        await app.state.services.close()

    app = FastAPI(title="Recipes Backend", lifespan=lifespan)

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        return app_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
        message = f"Invalid or missing fields: {', '.join(f for f in fields if f)}" if fields else "Invalid request"
        return error_response("validation_error", status=400, message=message)

    app.add_middleware(UncaughtExceptionMiddleware)
    app.add_middleware(
        RateLimiterMiddleware,
        attempts=config.auth_rate_limit_attempts,
        window_seconds=config.auth_rate_limit_window_seconds,
    )
    app.add_middleware(SecurityHeadersMiddleware, enforce_hsts=config.is_production)

    # CORS MUST be near the bottom
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.client_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return success_response(data={"status": "healthy"})

    # ============================================================================
    # INCLUDE ROUTERS
    # ============================================================================
    app.include_router(auth_router)
    app.include_router(payments_router)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
