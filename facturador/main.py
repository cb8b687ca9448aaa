"""
FACTURADOR — Main API Application
FastAPI backend for point-of-sale invoicing (Argentina, ARCA electronic invoicing).

Checkout flow:
  1. POST /api/v1/sessions                  → open a checkout session (branch + operator)
  2. PUT/POST /api/v1/sessions/{id}/...     → compose the draft (client, items, discount, IVA)
  3. POST /api/v1/sessions/{id}/payment/... → confirm payment (cash, card, transfer, QR wallet)
  4. POST /api/v1/sessions/{id}/settle      → number, authorize (CAE) and commit
  5. On ARCA failure: /retry or /settle-offline

Architecture:
  - Sessions live in memory and are cleaned up after inactivity
  - Stock, payments, documents and numbering live in the configured store
    (in-memory or Supabase)
  - Every engine error is a FacturadorError rendered as ErrorResponse
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from facturador.core.config import get_arca_url, settings
from facturador.core.errors import ExternalAuthorityError, FacturadorError
from facturador.dependencies import get_engine
from facturador.routers.checkout_router import router as checkout_router
from facturador.schemas.models import ErrorResponse, HealthResponse

# ─────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("facturador")


# ─────────────────────────────────────────────────────────────
# APP LIFECYCLE
# ─────────────────────────────────────────────────────────────

async def _cleanup_stale_sessions(sessions):
    """Background task: periodically remove inactive checkout sessions."""
    while True:
        await asyncio.sleep(settings.session_cleanup_interval_seconds)
        removed = sessions.cleanup_stale()
        if removed:
            logger.info(f"Session cleanup: removed {removed} stale session(s). Active: {len(sessions)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    logger.info(f"FACTURADOR v{settings.app_version} starting...")
    logger.info(f"   ARCA environment: {settings.arca_environment.value}")
    logger.info(f"   ARCA autorizar URL: {get_arca_url('autorizar')}")
    logger.info(f"   Store backend: {settings.store_backend.value}")
    cleanup_task = asyncio.create_task(_cleanup_stale_sessions(engine.sessions))
    yield
    cleanup_task.cancel()
    await engine.notifications.drain()
    engine.sessions.close_all()
    logger.info("FACTURADOR shutdown complete.")


# ─────────────────────────────────────────────────────────────
# FASTAPI APP
# ─────────────────────────────────────────────────────────────

limiter = Limiter(key_func=get_remote_address, default_limits=["120/minute"])

app = FastAPI(
    title="FACTURADOR API",
    description=(
        "Motor de facturación para punto de venta: composición del comprobante, "
        "cobro (efectivo, tarjeta, transferencia, QR), numeración, autorización "
        "ARCA (CAE) y registro de stock y pagos."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


# ─────────────────────────────────────────────────────────────
# GLOBAL EXCEPTION HANDLER
# ─────────────────────────────────────────────────────────────

@app.exception_handler(FacturadorError)
async def facturador_error_handler(request: Request, exc: FacturadorError):
    failed_step = None
    retry_available = None
    offline_available = None
    if isinstance(exc, ExternalAuthorityError):
        retry_available = exc.retry_available
        offline_available = exc.offline_fallback_available
    if exc.failed_step is not None:
        failed_step = exc.failed_step.value
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=type(exc).__name__,
            detail=exc.message,
            code=exc.code,
            failed_step=failed_step,
            retry_available=retry_available,
            offline_fallback_available=offline_available,
        ).model_dump(),
    )


# ═════════════════════════════════════════════════════════════
# ROUTES
# ═════════════════════════════════════════════════════════════

@app.get("/health", response_model=HealthResponse, tags=["Sistema"])
async def health_check():
    """Verificar estado del servicio."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.arca_environment.value,
        "arca_url": get_arca_url("autorizar"),
        "store_backend": settings.store_backend.value,
    }


app.include_router(checkout_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("facturador.main:app", host=settings.host, port=settings.port, reload=settings.debug)
