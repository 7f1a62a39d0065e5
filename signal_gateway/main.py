import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from signal_gateway import __version__
from signal_gateway.api.chat import get_gateway
from signal_gateway.api.chat import router as chat_router
from signal_gateway.core.config import settings, validate_settings_for_production
from signal_gateway.core.logging import setup_logging
from signal_gateway.core.metrics import PrometheusMiddleware, metrics_response
from signal_gateway.core.middleware import RequestLoggingMiddleware
from signal_gateway.core.sentry import init_sentry
from signal_gateway.gateway.errors import FREE_LIMIT_HEADER, FREE_REMAINING_HEADER, GatewayError
from signal_gateway.gateway.gateway import ChatGateway, build_gateway

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    app.state.gateway = build_gateway(settings)
    logger.info(
        "Signal gateway started (env=%s, quota=%s, models=%d)",
        settings.app_env,
        app.state.gateway.quota.backend,
        len(settings.free_tier_model_list),
    )

    yield

    # Shutdown
    await app.state.gateway.close()
    logger.info("Signal gateway shut down")


app = FastAPI(
    title="Signal Gateway",
    description="Resilient LLM gateway with fallback, circuit breaking and free-tier quotas",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url=None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers or None)


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)


# Log unhandled exceptions with the full traceback; callers only see a generic message
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Prometheus metrics middleware
app.add_middleware(PrometheusMiddleware)

# CORS; quota headers must be readable by the browser client
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origin_list,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=[FREE_REMAINING_HEADER, FREE_LIMIT_HEADER],
)

# API routes
app.include_router(chat_router, prefix="/api")


@app.get("/api/health")
async def health(gateway: ChatGateway = Depends(get_gateway)):
    return gateway.health()


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "signal_gateway.main:app",
        host=settings.app_host,
        port=settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
