from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eduauth.api.error_handling import register_exception_handlers
from eduauth.api.routes import resolve_client_ip, router
from eduauth.config import get_settings
from eduauth.logging import bind_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from eduauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "eduauth_started",
        version=__version__,
        store=type(runtime.store).__name__,
        cache=type(runtime.cache).__name__,
    )
    try:
        yield
    finally:
        try:
            await runtime.aclose()
        except Exception as exc:
            logger.error("eduauth_shutdown_failed", error_type=type(exc).__name__, error=str(exc))
        else:
            logger.info("eduauth_stopped")


async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh id) to the request's log context and response."""
    request.state.started_at = time.perf_counter()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    client_ip = resolve_client_ip(request, get_settings().trusted_proxy_hops)
    bind_request_context(client_ip=client_ip, method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
}


async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # Auth responses carry tokens and one-time codes
    if request.url.path.startswith("/api/auth") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


async def _probe(component: str, check) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error_type=type(exc).__name__, error=str(exc))
        return False
    return True


async def health() -> JSONResponse:
    """Probe the durable store and the cache, each under its own deadline."""
    from eduauth.service.runtime import get_runtime

    runtime = get_runtime()
    components = {"store": runtime.store, "cache": runtime.cache}
    checks = {}
    for name, backend in components.items():
        check = backend.ping if name == "store" else backend.verify_connection
        ok = await _probe(name, check)
        checks[name] = {"status": "healthy" if ok else "unhealthy", "type": type(backend).__name__}

    healthy = all(c["status"] == "healthy" for c in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "degraded", "version": __version__, "checks": checks},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Educademy Auth", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], include_in_schema=False)
    return app


app = create_app()
