import logging
import os
import uuid

from fastapi import FastAPI, HTTPException, status
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from serialboxd.auth import router as auth_router
from serialboxd.auth.security import TokenIssuer
from serialboxd.config import settings
from serialboxd.core import exceptions
from serialboxd.core.crypto import SymmetricCipher, load_key_custodian
from serialboxd.database import AsyncSessionLocal
from serialboxd.routers.tmdb import router as tmdb_router
from serialboxd.services.session_store import SessionLockRegistry

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
)

# Process-wide auth state. The cipher is attached on startup once the key is unwrapped.
app.state.token_issuer = TokenIssuer.from_settings(settings)
app.state.session_locks = SessionLockRegistry()

# Uploaded avatars
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

configured_origins = [str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS]
default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
allow_origins = configured_origins if settings.APP_ENV == "production" else list(dict.fromkeys([*default_origins, *configured_origins]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    client_host = request.client.host if request.client else "unknown"
    logger.info("%s %s (ip=%s request_id=%s)", request.method, request.url.path, client_host, request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

# Exception Handlers
app.add_exception_handler(exceptions.ServiceError, exceptions.service_exception_handler)  # type: ignore
app.add_exception_handler(RequestValidationError, exceptions.validation_exception_handler)  # type: ignore
app.add_exception_handler(SQLAlchemyError, exceptions.database_exception_handler)  # type: ignore
app.add_exception_handler(Exception, exceptions.unhandled_exception_handler)

# Routers
app.include_router(auth_router.router, tags=["Auth"])
app.include_router(tmdb_router, prefix="/api/tmdb", tags=["TMDB"])

@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/healthz")
async def healthz():
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("Health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database unavailable",
        ) from exc
    return {"status": "ok", "database": "ok"}


@app.on_event("startup")
async def load_refresh_token_cipher() -> None:
    _validate_security_settings()
    # Fatal on failure: the app must not serve traffic without the key
    app.state.cipher = SymmetricCipher(load_key_custodian(settings))
    logger.info("%s %s started", settings.PROJECT_NAME, settings.VERSION)


def _validate_security_settings() -> None:
    errors: list[str] = []
    if settings.ACCESS_TOKEN_SECRET == settings.REFRESH_TOKEN_SECRET:
        errors.append("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
    if settings.APP_ENV == "production":
        if len(settings.ACCESS_TOKEN_SECRET.strip()) < 24:
            errors.append("ACCESS_TOKEN_SECRET must be at least 24 characters in production.")
        if len(settings.REFRESH_TOKEN_SECRET.strip()) < 24:
            errors.append("REFRESH_TOKEN_SECRET must be at least 24 characters in production.")
        if settings.ENCRYPTION_KEY and not settings.WRAPPED_ENCRYPTION_KEY:
            logger.warning("Plain ENCRYPTION_KEY configured in production; prefer WRAPPED_ENCRYPTION_KEY.")

    if errors:
        raise RuntimeError("; ".join(errors))
