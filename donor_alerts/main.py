# donor_alerts/main.py
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from donor_alerts.api.notifications import router as notifications_router
from donor_alerts.api.requests import router as requests_router
from donor_alerts.config import Settings
from donor_alerts.errors import StoreError
from donor_alerts.runtime import Runtime

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # the Azure SDKs log every HTTP request at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("uamqp").setLevel(logging.WARNING)


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    # 1) config from .env / environment
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    # 2) stores, bus and components, built once for the whole process
    runtime = runtime or Runtime.from_settings(settings)

    app = FastAPI(title="Donor Alerts")
    app.state.runtime = runtime

    # 3) CORS (tighten origins in prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 4) REST routes
    app.include_router(notifications_router)
    app.include_router(requests_router)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": {"kind": "internal", "message": str(exc)}},
        )

    @app.get("/health")
    async def health():
        return {"ok": True, "store": runtime.settings.store_backend}

    @app.on_event("startup")
    async def startup_event():
        # 5) event bus, Service Bus consumer and sweepers in the background
        await runtime.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await runtime.stop()

    return app


app = create_app()
