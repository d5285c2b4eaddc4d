"""FastAPI entrypoint."""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from agentgate import __version__
from agentgate.channels.telegram.router import router as telegram_router
from agentgate.config import Settings, get_settings, validate_settings_for_env
from agentgate.logging import configure_logging
from agentgate.routes.health import router as health_router
from agentgate.routes.limits import limiter
from agentgate.routes.webhook import router as webhook_router
from agentgate.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

RuntimeFactory = Callable[[Settings], Runtime]


def create_app(runtime_factory: RuntimeFactory = build_runtime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        validate_settings_for_env(settings)
        configure_logging(settings.log_level, app_env=settings.app_env)
        runtime = runtime_factory(settings)
        app.state.runtime = runtime
        await runtime.startup()
        logger.info(
            "agentgate %s ready on %s:%s", __version__, settings.bind_host, settings.bind_port
        )
        yield
        await runtime.shutdown()

    app = FastAPI(title="agentgate", version=__version__, lifespan=lifespan)
    app.state.limiter = limiter

    @app.exception_handler(RateLimitExceeded)
    async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"error": "rate limit exceeded", "detail": str(exc.detail)},
        )

    app.include_router(health_router)
    app.include_router(webhook_router)
    app.include_router(telegram_router)
    return app


app = create_app()
