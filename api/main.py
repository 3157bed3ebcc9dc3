"""
Proxy Cert Manager API

Certificate lifecycle engine for a reverse-proxy fleet: ACME issue,
renew and revoke with HTTP-01 or DNS-01 challenges, automatic renewal,
and distribution of certificates to peer nodes.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from config import ensure_directories, get_nginx_conf_path, is_development_mode, settings
from core.request_logger import RequestLoggerMiddleware
from endpoints import acme_users, certificates, dns, nodes, notifications

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Proxy Cert Manager API starting up...")

    # Ensure required directories exist
    ensure_directories()

    # Initialize database
    from core.database import initialize_database

    await initialize_database()
    logger.info("Database initialized")

    # Register ACME accounts flagged for it
    from core.acme_user_service import get_acme_user_service

    await get_acme_user_service().register_on_startup()

    # Start certificate renewal scheduler
    from core.cert_scheduler import get_cert_scheduler

    cert_scheduler = get_cert_scheduler()
    try:
        await cert_scheduler.start()
    except Exception as e:
        logger.warning(f"Failed to start certificate scheduler: {e}")

    yield

    # Stop certificate scheduler
    try:
        await cert_scheduler.stop()
    except Exception as e:
        logger.warning(f"Error stopping certificate scheduler: {e}")

    logger.info("Proxy Cert Manager API shutting down...")


app = FastAPI(
    title="Proxy Cert Manager API",
    description="""
    ## Purpose

    Keeps the TLS certificates of a reverse-proxy fleet valid.

    - **Issue / renew / revoke** over WebSockets with a live operation log
    - **HTTP-01** through a built-in responder, **DNS-01** through pluggable providers
    - **Auto-renewal** sweep with notifications for every outcome
    - **Fleet sync** of issued certificates to peer nodes

    Only one certificate operation talks to the CA at a time;
    `GET /certificates/processing` reports whether one is running.
    """,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Include API routers
app.include_router(certificates.router)
app.include_router(dns.router)
app.include_router(acme_users.router)
app.include_router(nodes.router)
app.include_router(notifications.router)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Responses may carry certificate paths and operation logs
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggerMiddleware)

# CORS middleware; open only in debug mode unless origins are configured
_cors_origins = (
    [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    if settings.cors_allowed_origins
    else ["*"]
    if settings.api_debug
    else []
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get(
    "/",
    summary="API Health Check",
    description="Basic health check endpoint to verify the API is running.",
    response_description="API status and basic information",
    tags=["Health"],
)
async def root():
    """
    Welcome endpoint providing API status and basic information.

    Returns:
        dict: API status, version, and documentation URLs
    """
    return {
        "message": "Proxy Cert Manager API is running",
        "version": "0.1.0",
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
    }


@app.get(
    "/health",
    summary="Detailed Health Check",
    description="Database, scheduler and certificate gate status.",
    response_description="Detailed health status of the API and its components",
    tags=["Health"],
)
async def health_check():
    """
    Detailed health check.

    Reports database reachability, the renewal schedule, whether a
    certificate operation is in flight, and the configuration root.
    """
    from core.cert_gate import get_cert_gate
    from core.cert_scheduler import get_cert_scheduler
    from core.database import get_database

    database = {"status": "ok"}
    try:
        await get_database().fetch_one("SELECT COUNT(*) AS count FROM certs")
    except Exception as e:
        logger.warning(f"Health check database query failed: {e}")
        database = {"status": "error", "message": str(e)}

    conf_root = get_nginx_conf_path()
    return {
        "status": "healthy" if database["status"] == "ok" else "unhealthy",
        "timestamp": datetime.now().isoformat(),
        "api": {"status": "running", "version": "0.1.0"},
        "database": database,
        "certificates": {"processing": get_cert_gate().is_processing()},
        "scheduler": get_cert_scheduler().get_next_run_times(),
        "nginx": {"conf_root": str(conf_root), "conf_root_exists": conf_root.is_dir()},
    }


def run() -> None:
    """Run the API server, serving TLS with a hot-reloadable certificate when configured."""
    from core.server_tls import get_server_tls

    server_tls = get_server_tls()
    if not server_tls.enabled:
        uvicorn.run(
            "main:app",
            host=settings.api_host,
            port=settings.api_port,
            reload=is_development_mode(),
            log_level=settings.log_level.lower(),
        )
        return

    config = uvicorn.Config(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        ssl_certfile=server_tls.cert_path,
        ssl_keyfile=server_tls.key_path,
    )
    config.load()
    server_tls.install(config.ssl)
    uvicorn.Server(config).run()


if __name__ == "__main__":
    run()
