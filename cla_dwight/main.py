"""Main FastAPI application."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request

from . import __version__
from .api import signatures_router
from .api.formatters import format_time_span
from .core.config import ConfigurationError, Settings, get_settings
from .core.logging_config import setup_logging
from .exceptions import ClaException
from .middleware.exception_handler import cla_exception_handler
from .middleware.request_context import RequestContextMiddleware
from .schemas.signature import HealthResponse
from .services import SignatureCache

settings = get_settings()

# Setup logging first
setup_logging(
    log_level=settings.log_level,
    log_format=settings.log_format,
    secrets=[settings.github_orgtoken, *settings.get_list_auth()],
)
logger = logging.getLogger(__name__)


def _log_configuration_warnings(settings: Settings) -> None:
    """Point deployers at settings that leave the proxy half-working."""
    missing = settings.missing_configuration()
    if missing:
        logger.critical(
            "CLA assistant access is not configured: %s "
            "The service starts, but only serves the file cache (if any).",
            missing,
        )

    if not settings.get_list_auth():
        logger.warning(
            "SECURITY: CLA_LIST_AUTH is empty. The full signature list "
            "and local uploads are unprotected."
        )

    if not settings.cla_filecache:
        logger.warning(
            "CLA_FILECACHE is not set. An unreachable CLA assistant at startup "
            "leaves the service without data."
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle for the CLA proxy."""
    cache: SignatureCache = app.state.cache
    try:
        app.state.settings.validate_stores()
    except ConfigurationError as e:
        logger.critical(f"STARTUP BLOCKED: {e}")
        raise SystemExit(1) from e
    _log_configuration_warnings(app.state.settings)

    # Initial load: a failure degrades the cache, it never blocks startup.
    await asyncio.to_thread(cache.reload_on_startup)
    health = cache.status()
    if health.is_healthy:
        logger.info("Initial reload complete")
    else:
        logger.error("Initial reload failed, serving degraded: %s", health.reason)

    yield  # App runs here

    cache.close()


def create_app(settings: Optional[Settings] = None, cache: Optional[SignatureCache] = None) -> FastAPI:
    """Build the application around one SignatureCache.

    Tests pass their own settings and a cache wired to a fake CLA assistant.
    """
    settings = settings or get_settings()
    cache = cache or SignatureCache.from_settings(settings)

    app = FastAPI(
        title="CLA-dwight",
        description=(
            "Caching proxy in front of the CLA assistant. Answers whether a GitHub "
            "user signed the organization's contributor license agreement without "
            "handing out the admin token needed to ask the CLA assistant directly.\n\n"
            "**Authentication:** When `CLA_LIST_AUTH` is set, the full listing and "
            "local uploads require HTTP basic auth. Per-user lookups stay public, "
            "with the fields in `CLA_AUTH_FIELDS` removed for anonymous callers."
        ),
        version=__version__,
        license_info={"name": "MIT", "url": "https://opensource.org/licenses/MIT"},
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.cache = cache

    app.add_middleware(RequestContextMiddleware)

    # Register exception handlers
    app.add_exception_handler(ClaException, cla_exception_handler)

    # BASE is normalized to "/" or "/prefix/".
    app.include_router(signatures_router, prefix=settings.base.rstrip("/"))

    started = time.monotonic()

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request):
        """Health of the signature cache, uptime and the age of the served data.

        Never raises, so load balancers can check a degraded service without
        receiving 5xx.
        """
        cache: SignatureCache = request.app.state.cache
        health = cache.status()
        snapshot = cache.current_snapshot()

        response = HealthResponse(
            status=health.status.value,
            reason=health.reason,
            uptime_seconds=round(time.monotonic() - started),
        )
        if snapshot is not None:
            response = response.model_copy(update={
                "snapshot_built_at": snapshot.built_at,
                "snapshot_source": snapshot.source,
                "snapshot_age": format_time_span(snapshot.age()),
                "signatory_count": len(snapshot.signatories),
                "signature_count": snapshot.signature_count,
            })
        return response

    logger.info(
        "CLA-dwight configured | base=%s | upstream=%s | filecache=%s | localstore=%s | lookup=%s",
        settings.base,
        settings.cla_assistant_url,
        settings.cla_filecache or "disabled",
        settings.cla_localstore or "disabled",
        ",".join(settings.get_lookup_fields()) or "none",
    )
    return app


app = create_app(settings)


def run() -> None:
    """Console entry point: serve the app on ``PORT``."""
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
