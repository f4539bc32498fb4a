import logging as _logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse
from .components.ledger.errors import (
    InsufficientCredits,
    InvalidTransition,
    InvalidWebhookSignature,
    ReservationNotFound,
    TransactionConflict,
    UnknownAccount,
)
from .platform.config import settings
from .platform.logging import setup_logging
from .platform.middleware import RequestLoggingMiddleware, RateLimitMiddleware

# Set up logging
logger = setup_logging()

# ---------------------------------------------------------------------------
# Production safety: fail-fast if SECRET_KEY is the insecure default
# ---------------------------------------------------------------------------
_INSECURE_DEFAULTS = {"dev-secret-key-change-in-production", "changeme", "secret", ""}
_is_production = settings.DEPLOYMENT_ENV == "production"
if _is_production and settings.SECRET_KEY in _INSECURE_DEFAULTS:
    raise RuntimeError(
        "CRITICAL: SECRET_KEY is set to an insecure default. "
        "Set a strong SECRET_KEY in your .env before running in production."
    )
if _is_production and not settings.MVP_DISABLE_STRIPE and not settings.STRIPE_WEBHOOK_SECRET:
    raise RuntimeError("CRITICAL: STRIPE_WEBHOOK_SECRET must be set when Stripe is enabled.")

# Disable interactive API docs in production (information disclosure)
_docs_url = None if _is_production else "/api/docs"
_openapi_url = None if _is_production else "/api/openapi.json"


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    logger.info("Credit engine API started | env=%s", settings.DEPLOYMENT_ENV)
    yield


app = FastAPI(
    title="Credit Engine API",
    description="Usage credits, metered reservations and subscription billing reconciliation.",
    version="1.0.0",
    docs_url=_docs_url,
    openapi_url=_openapi_url,
    lifespan=_lifespan,
)

_val_logger = _logging.getLogger("credit_engine.validation")
_err_logger = _logging.getLogger("credit_engine.errors")

# Friendly messages for FastAPI-Users error codes
_API_ERROR_MESSAGES = {
    "REGISTER_USER_ALREADY_EXISTS": "An account with this email already exists. Sign in instead or use a different email.",
    "LOGIN_BAD_CREDENTIALS": "Incorrect email or password.",
}


def _is_configured_secret(value: str | None) -> bool:
    cleaned = (value or "").strip().lower()
    return cleaned not in {"", "skip", "changeme"}


def _sanitize_errors(errors: list) -> list:
    """Ensure validation error details are JSON-serializable."""

    def _json_safe(value):
        if isinstance(value, (str, int, float, bool)) or value is None:
            return value
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, dict):
            return {str(k): _json_safe(v) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [_json_safe(v) for v in value]
        return str(value)

    return [_json_safe(err) for err in errors]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log validation errors with detail so we can diagnose 422s."""
    _val_logger.warning(
        "Validation error on %s %s: %s",
        request.method,
        request.url.path,
        exc.errors(),
    )
    return JSONResponse(
        status_code=422,
        content={"detail": _sanitize_errors(exc.errors())},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, str) and detail in _API_ERROR_MESSAGES:
        detail = _API_ERROR_MESSAGES[detail]
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


# ---------------------------------------------------------------------------
# Credit engine errors -> HTTP
# ---------------------------------------------------------------------------
@app.exception_handler(InsufficientCredits)
async def insufficient_credits_handler(request: Request, exc: InsufficientCredits):
    return JSONResponse(
        status_code=402,
        content={"detail": "insufficient_credits", "required": exc.required, "available": exc.available},
    )


@app.exception_handler(ReservationNotFound)
async def reservation_not_found_handler(request: Request, exc: ReservationNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(UnknownAccount)
async def unknown_account_handler(request: Request, exc: UnknownAccount):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidWebhookSignature)
async def invalid_signature_handler(request: Request, exc: InvalidWebhookSignature):
    _err_logger.warning("Rejected webhook on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid signature"})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(TransactionConflict)
async def transaction_conflict_handler(request: Request, exc: TransactionConflict):
    _err_logger.warning("Transaction conflict on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Account is busy, try again"},
        headers={"Retry-After": "1"},
    )


# ---------------------------------------------------------------------------
# Security headers middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security-hardening HTTP headers to every response."""

    async def dispatch(self, request: Request, call_next):
        response: StarletteResponse = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if _is_production:
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# CORS: frontend URL + localhost + any extra origins
_cors_origins = [
    settings.FRONTEND_URL,
    "http://localhost:5173",
    "http://localhost:3000",
]
if settings.CORS_EXTRA_ORIGINS:
    _cors_origins.extend(o.strip() for o in settings.CORS_EXTRA_ORIGINS.split(",") if o.strip())
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _cors_origins if o],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)

# Rate limiting (auth and billing-action endpoints)
app.add_middleware(RateLimitMiddleware)

# Request logging
app.add_middleware(RequestLoggingMiddleware)

# Sentry (optional)
if settings.SENTRY_DSN and settings.SENTRY_DSN.startswith("https://"):
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=0.1,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
    )

# Include routers
from .api.v1.users_fastapi import (
    UserRead,
    UserCreate,
    UserUpdate,
    auth_backend,
    fastapi_users,
)
from .api.v1.credits import router as credits_router
from .api.v1.subscriptions import router as subscriptions_router
from .api.v1.webhooks import router as webhooks_router

# FastAPI-Users auth routers
app.include_router(
    fastapi_users.get_auth_router(auth_backend),
    prefix="/api/v1/auth/jwt",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/api/v1/auth",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/api/v1/users",
    tags=["users"],
)

app.include_router(credits_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    db_ok = False
    redis_ok = False
    try:
        from sqlalchemy import text
        from .platform.database import SessionLocal
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        db_ok = True
    except Exception:
        db_ok = False
    if not settings.mvp_flags.disable_celery:
        try:
            import redis
            r = redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)
            redis_ok = bool(r.ping())
        except Exception:
            redis_ok = False

    status_str = "healthy" if db_ok and (redis_ok or settings.mvp_flags.disable_celery) else "degraded"
    return {
        "status": status_str,
        "service": "credit-engine-api",
        "database": db_ok,
        "redis": redis_ok,
        "integrations": {
            "stripe_configured": _is_configured_secret(settings.STRIPE_API_KEY),
            "stripe_webhooks_configured": _is_configured_secret(settings.STRIPE_WEBHOOK_SECRET),
        },
    }
