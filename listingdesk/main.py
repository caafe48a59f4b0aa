import logging
import math
import os
from typing import Optional

from fastapi import Cookie, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from psycopg2.pool import ThreadedConnectionPool
from pydantic import BaseModel
from dotenv import load_dotenv
from jose import JWTError, jwt

from . import app_context
from .app.credits import load_credits_config
from .app.credits.repository import PostgresCreditsStore
from .app.listings import OpenAIListingGenerator
from .app.listings.generator import DEFAULT_MODEL
from .app.routes.admin import router as admin_router
from .app.routes.billing import router as billing_router
from .app.routes.credits import router as credits_router
from .app.routes.listings import router as listings_router
from .app.services.credits import build_credits_services, build_store


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "listingdesk"),
    user=os.getenv("DB_USER", "listingdesk"),
    password=os.getenv("DB_PASSWORD", "listingdesk"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))
DB_AUTO_MIGRATE = os.getenv("DB_AUTO_MIGRATE", "1").lower() in {"1", "true", "yes"}

JWT_SECRET_KEY = os.getenv("AUTH_JWT_SECRET") or os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
ADMIN_EMAIL = (os.getenv("ADMIN_EMAIL") or "").strip().lower()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", DEFAULT_MODEL)
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

logger = logging.getLogger("listingdesk")


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None
    is_admin: bool = False


def is_admin_email(email: Optional[str]) -> bool:
    return bool(ADMIN_EMAIL) and (email or "").strip().lower() == ADMIN_EMAIL


def resolve_user_from_session_token(session_token: str) -> Optional[AuthenticatedUser]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    email = payload.get("email")
    return AuthenticatedUser(id=str(subject), email=email, is_admin=is_admin_email(email))


def _session_token(session_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if isinstance(session_token, str) and session_token:
        return session_token
    if isinstance(authorization, str):
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return None


def get_current_user(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    token = _session_token(session_token, authorization)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def get_optional_current_user(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> Optional[AuthenticatedUser]:
    token = _session_token(session_token, authorization)
    if not token:
        return None

    try:
        user = resolve_user_from_session_token(token)
    except Exception:
        logger.exception("Unexpected error while resolving optional session token")
        return None
    return user


app = FastAPI(title="ListingDesk API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(credits_router)
app.include_router(billing_router)
app.include_router(admin_router)
app.include_router(listings_router)


@app.on_event("startup")
def setup_credits_services() -> None:
    config = load_credits_config()

    pool = None
    if config.store_backend == "postgres":
        pool = ThreadedConnectionPool(DB_POOL_MIN, DB_POOL_MAX, **DB_CFG)
        store = build_store(config, get_conn=pool.getconn, release_conn=pool.putconn)
    else:
        store = build_store(config)
    app.state.db_pool = pool

    if DB_AUTO_MIGRATE and isinstance(store, PostgresCreditsStore):
        store.ensure_schema()

    services = build_credits_services(
        config,
        store=store,
        generator=OpenAIListingGenerator(api_key=OPENAI_API_KEY, model=OPENAI_MODEL),
    )
    app_context.configure(
        get_current_user=get_current_user,
        get_optional_current_user=get_optional_current_user,
        credits_services=services,
    )
    logger.info(
        "Credits services ready store=%s skus=%s",
        config.store_backend,
        ",".join(sorted(config.catalog.skus)) or "none",
    )


@app.on_event("shutdown")
def teardown_credits_services() -> None:
    pool = getattr(app.state, "db_pool", None)
    if pool is not None:
        pool.closeall()
        app.state.db_pool = None
    app_context.reset()
