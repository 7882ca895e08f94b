import logging.config
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.stream import ws_router
from app.config import get_settings
from app.services.errors import MessagingError, TransientStoreError
from relay.realtime.managers import (
    DeliveryChannel,
    get_delivery_channel,
    shutdown_realtime,
    startup_realtime,
)

settings = get_settings()

# Seconds a client should wait before retrying after a transient store failure.
STORE_RETRY_AFTER_SECONDS = 1


def build_logging_config(level: str) -> dict[str, Any]:
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
            }
        },
        "root": {
            "handlers": ["default"],
            "level": level,
        },
        "loggers": {
            # reconnect chatter from the relay stays out of the root handlers
            "relay.realtime.transport": {
                "handlers": ["default"],
                "level": level,
                "propagate": False,
            },
            "sqlalchemy.engine": {
                "level": "INFO" if settings.debug else "WARNING",
            },
        },
    }


logging.config.dictConfig(build_logging_config(settings.log_level))

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_origin_regex=settings.cors_allow_origin_regex,
)


@app.exception_handler(MessagingError)
async def _messaging_error_handler(_request: Request, exc: MessagingError) -> JSONResponse:
    headers = None
    if isinstance(exc, TransientStoreError):
        headers = {"Retry-After": str(STORE_RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.get("/health", tags=["system"])
async def health_check(channel: DeliveryChannel = Depends(get_delivery_channel)) -> dict[str, Any]:
    """Liveness check with a summary of the delivery channel."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "deliveryConnections": await channel.registry.connection_count(),
        "relayActive": channel.relay_active,
    }


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)
