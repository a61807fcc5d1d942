import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(os.path.dirname(package_dir), ".env"))

from promptforge.core.config import Settings, settings, validate_config
from promptforge.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from promptforge.core.logging import configure_logging
from promptforge.core.middleware.metrics import MetricsMiddleware
from promptforge.core.middleware.ratelimit import RateLimitMiddleware
from promptforge.core.middleware.request_id import RequestIdMiddleware
from promptforge.core.middleware.site_access import SiteAccessMiddleware
from promptforge.core.ratelimit import build_rate_limit_config
from promptforge.core.validation import validate_env
from promptforge.api import billing, entitlements, export as export_api, health, metrics, notifications, site, waitlist


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("promptforge")
    app.state.startup_time = time.time()
    logger.info("app.startup", extra={"coming_soon": app.state.coming_soon_enabled, "routes": len(app.routes)})
    try:
        yield
    finally:
        logger.info("app.shutdown", extra={"uptime_s": round(time.time() - app.state.startup_time, 1)})


def create_app(settings_obj: Optional[Settings] = None) -> FastAPI:
    cfg = settings_obj or settings

    configure_logging(cfg.ENV, level=cfg.LOG_LEVEL)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    app = FastAPI(title="PromptForge - Backend", version="3.0.0", lifespan=lifespan)
    app.state.settings = cfg
    app.state.coming_soon_enabled = bool(cfg.COMING_SOON)

    # Added last runs first: the gate sees the request before anything else
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config(cfg))
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SiteAccessMiddleware, enabled=cfg.COMING_SOON)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(site.router)
    app.include_router(waitlist.router)
    app.include_router(notifications.router)
    app.include_router(export_api.router)
    app.include_router(entitlements.router)
    app.include_router(billing.router)
    app.include_router(health.router)
    app.include_router(health.root_router)
    app.include_router(metrics.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("promptforge.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
