import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from dispatch_engine.config import settings
from dispatch_engine.engine import DispatchEngine, build_engine
from dispatch_engine.errors import DispatchError, RateLimited
from dispatch_engine.metrics import get_metrics_bytes, get_metrics_content_type
from dispatch_engine.redis_client import close_redis
from dispatch_engine.routes import couriers, orders, realtime

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    return JSONResponse(
        status_code=400,
        content={
            "code": "VALIDATION_ERROR",
            "error": first.get("msg", "Invalid request data"),
            "details": {"field": ".".join(str(p) for p in first.get("loc", ()))},
        },
    )


def create_app(engine: DispatchEngine | None = None) -> FastAPI:
    """Build the app. Pass an engine to skip building one from settings (tests, embedding)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = engine is None
        app.state.engine = await build_engine(settings) if owned else engine
        yield
        if owned:
            await app.state.engine.close()
            await close_redis()

    app = FastAPI(title="Order Dispatch Engine", lifespan=lifespan)
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(orders.router)
    app.include_router(couriers.router)
    app.include_router(realtime.router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(content=get_metrics_bytes(), media_type=get_metrics_content_type())

    return app


app = create_app()
