from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from assistant_relay.api.error_handling import register_exception_handlers
from assistant_relay.api.routes import router
from assistant_relay.config import Settings
from assistant_relay.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = Settings.from_env()

PROBE_TIMEOUT_SECONDS = 3

# local dev front-ends; no wildcard while credentials are allowed
_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    from assistant_relay.service import runtime as runtime_module

    try:
        runtime_module.get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise
    yield
    current = runtime_module.runtime
    if current is None:
        return
    try:
        await current.aclose()
    except Exception as exc:
        logger.error("runtime_close_failed", error=str(exc))
    else:
        logger.info("runtime_closed")


app = FastAPI(title="Assistant Relay", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    # browsers may only read these off a cross-origin response
    expose_headers=["X-Request-ID", "X-Thread-Id", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    """Adopt X-Request-ID (or mint one) for logs and envelopes, and echo it."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@app.middleware("http")
async def security_headers_middleware(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # the relay stream sets its own no-cache policy
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check: Callable[[], None]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe the store, Redis and the object-store mount; report upstream wiring."""
    from assistant_relay.service.runtime import get_runtime

    runtime = get_runtime()
    objects_root = Path(runtime.object_store.root)

    def _probe_objects() -> None:
        marker = objects_root / ".healthz"
        marker.write_text(datetime.utcnow().isoformat())
        marker.read_text()
        marker.unlink(missing_ok=True)

    probes: List[Tuple[str, Optional[Callable[[], None]], Dict[str, Any]]] = [
        (
            "database",
            runtime.store.verify_connection,
            {"type": "memory" if runtime.settings.use_memory_store else "postgres"},
        ),
        ("redis", runtime.cache.verify_connection if runtime.cache else None, {}),
        ("filesystem", _probe_objects, {}),
    ]

    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    for component, probe, extra in probes:
        if probe is None:
            checks[component] = {"status": "not_configured", **extra}
            continue
        ok = await _probe(component, probe)
        healthy = healthy and ok
        checks[component] = {"status": "healthy" if ok else "unhealthy", **extra}

    checks["upstream"] = {
        "status": "configured" if runtime.upstream is not None else "not_configured"
    }
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }
