import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from ums.api.deps import csrf_protect, provide_csrf_token, user_rate_limit
from ums.api.error_handling import register_exception_handlers
from ums.api.v1 import activity, admin, auth, users

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
from ums.config import settings

logging.getLogger("ums").setLevel(logging.DEBUG if settings.debug else logging.INFO)
from ums.core.csrf import get_csrf_guard
from ums.core.rate_limit import general_policy, get_rate_limiter
from ums.core.store import close_store
from ums.db.session import init_db
from prometheus_client import make_asgi_app

logger = logging.getLogger("ums.main")

scheduler = AsyncIOScheduler()


async def scheduled_csrf_sweep():
    """Drop expired CSRF tokens."""
    await get_csrf_guard().sweep()


async def scheduled_rate_limit_sweep():
    """Drop rate-limit counters whose window has ended."""
    await get_rate_limiter().sweep()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_production_config()
    await init_db()

    scheduler.add_job(scheduled_csrf_sweep, "interval", minutes=settings.csrf_sweep_interval_minutes)
    scheduler.add_job(scheduled_rate_limit_sweep, "interval", minutes=settings.rate_limit_sweep_interval_minutes)
    scheduler.start()
    logger.info("UMS started env=%s store=%s", settings.app_env, settings.store_backend)
    yield
    scheduler.shutdown()
    await close_store()


limiter = Limiter(key_func=get_remote_address, default_limits=[settings.global_rate_limit])

app = FastAPI(
    title="UMS API",
    description="User management: registration, sessions, CSRF, rate limiting, audit",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
register_exception_handlers(app)
app.add_middleware(SlowAPIMiddleware)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.enable_hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        logger.info(
            "%s %s -> %d ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            request.client.host if request.client else None,
        )
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["Authorization", "Content-Type", "X-CSRF-Token"],
    expose_headers=["X-CSRF-Token", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
)

# per-user limit, then CSRF check, then a fresh CSRF token for the response
api_dependencies = [
    Depends(user_rate_limit(general_policy)),
    Depends(csrf_protect),
    Depends(provide_csrf_token),
]
app.include_router(auth.router, prefix="/api/v1", dependencies=api_dependencies)
app.include_router(users.router, prefix="/api/v1", dependencies=api_dependencies)
app.include_router(activity.router, prefix="/api/v1", dependencies=api_dependencies)
app.include_router(admin.router, prefix="/api/v1", dependencies=api_dependencies)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"success": True, "message": "OK", "data": {"status": "ok", "env": settings.app_env}}
