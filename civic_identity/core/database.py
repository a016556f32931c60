from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from civic_identity.core.config import settings

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def get_db():
    """Dependency yielding a request-scoped session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create tables for all registered models"""
    # Import models so they register on Base.metadata
    from civic_identity.models import identity_verification, verification_document, user_verification  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
