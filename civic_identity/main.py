import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from civic_identity.core.config import settings
from civic_identity.core.database import engine, init_db
from civic_identity.core.exceptions import register_exception_handlers
from civic_identity.core.redis import RedisClient
from civic_identity.routers import admin_auth, admin_verifications, identity

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def check_auth_mode():
    """Demo authentication accepts every caller; it must never reach production."""
    if settings.AUTH_MODE == "demo" and settings.APP_ENV == "production":
        raise RuntimeError("AUTH_MODE=demo is not allowed when APP_ENV=production")


def _check_database() -> str:
    init_db()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return engine.url.get_backend_name()


def _check_redis() -> str:
    RedisClient.get_client().ping()
    return f"{settings.REDIS_HOST}:{settings.REDIS_PORT}"


def _check_storage() -> str:
    if settings.STORAGE_BACKEND != "s3":
        return f"local: {settings.UPLOAD_DIR}"
    from civic_identity.core.storage import _s3_client
    _s3_client().head_bucket(Bucket=settings.AWS_S3_BUCKET)
    return f"s3: {settings.AWS_S3_BUCKET}"


STARTUP_CHECKS = (
    ("Database", _check_database),
    ("Redis", _check_redis),
    ("Storage", _check_storage),
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Startup and shutdown events"""
    check_auth_mode()

    print("\n" + "=" * 50)
    print("  Starting CivicOS Identity API...")
    print("=" * 50)
    print(f"  Environment: {settings.APP_ENV}   Auth: {settings.AUTH_MODE}")
    print("-" * 50)

    for name, check in STARTUP_CHECKS:
        try:
            print(f"  [OK]   {name:<9} ({check()})")
        except Exception as e:
            print(f"  [FAIL] {name:<9} - {e}")
    print(f"  [OK]   {'Face':<9} ({settings.FACE_MATCHER})")
    print(f"  [OK]   {'TOTP':<9} ({settings.TOTP_VERIFIER})")

    print("-" * 50)
    print("  CivicOS Identity API is ready!")
    print("=" * 50 + "\n")
    yield

    print("\nShutting down CivicOS Identity API...")
    RedisClient.close()


is_production = settings.APP_ENV == "production"

app = FastAPI(
    title="CivicOS Identity API",
    lifespan=lifespan,
    docs_url=None if is_production else "/docs",
    redoc_url=None if is_production else "/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.get("/")
def health_check():
    return {"status": True}


app.include_router(identity.router)
app.include_router(admin_verifications.router)
app.include_router(admin_auth.router)
