"""
Orderflow Backend
FastAPI application entry point

- Lifespan: create tables, reset stale today counters, start retention jobs,
  re-arm refunds left pending by a previous process
- Domain errors mapped to HTTP status codes
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from sqlalchemy import text

from orderflow import __version__
from orderflow.api.routes import dashboard, orders, payments
from orderflow.core.config import settings
from orderflow.core.database import AsyncSessionLocal, init_models
from orderflow.core.exceptions import OrderflowError, http_status_for
from orderflow.core.utils import utcnow
from orderflow.runtime import Runtime, build_runtime

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def orderflow_error_handler(request: Request, exc: OrderflowError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build services on startup unless a runtime was injected.
    """
    runtime: Optional[Runtime] = getattr(app.state, "runtime", None)
    owns_runtime = runtime is None
    if owns_runtime:
        await init_models()
        runtime = build_runtime()
        app.state.runtime = runtime

    # Catch up on a day boundary crossed while we were down
    await runtime.retention.reset_today()

    if owns_runtime and settings.RETENTION_ENABLED:
        await runtime.scheduler.start()
        logger.info("Retention scheduler ENABLED")
    else:
        logger.info("Retention scheduler DISABLED")

    recovered = await runtime.refunds.recover_pending()
    if recovered:
        logger.info(f"Re-armed {recovered} pending refund(s)")

    yield

    if owns_runtime:
        await runtime.close()
        logger.info("Services stopped")


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Order lifecycle and refund reconciliation API",
        version=__version__,
        openapi_tags=[
            {"name": "Health", "description": "Health check"},
            {"name": "Orders", "description": "Order placement and admin transitions"},
            {"name": "Payments", "description": "Payment verification and gateway webhooks"},
            {"name": "Dashboard", "description": "Statistics and retention jobs"},
        ],
    )
    if runtime is not None:
        app.state.runtime = runtime

    app.add_exception_handler(OrderflowError, orderflow_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="/api/orders", tags=["Orders"])
    app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
    app.include_router(dashboard.router, prefix="/api/dashboard", tags=["Dashboard"])

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Returns 503 if the database is unreachable."""
        health_status = {
            "status": "healthy",
            "database": "unknown",
            "version": __version__,
            "timestamp": utcnow().isoformat(),
        }
        rt = getattr(request.app.state, "runtime", None)
        factory = rt.store.session_factory if rt is not None and rt.store.session_factory else AsyncSessionLocal
        try:
            async with factory() as db:
                await db.execute(text("SELECT 1"))
            health_status["database"] = "connected"
        except Exception as e:
            health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
            health_status["status"] = "unhealthy"
            return JSONResponse(status_code=503, content=health_status)

        if rt is not None:
            health_status["pending_refunds"] = len(rt.refunds.pending)
        return health_status

    return app


app = create_app()
