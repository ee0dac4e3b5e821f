"""Database engine and session factories"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing_sync.core.config import settings
from billing_sync.models.base import Base


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Webhook processing runs on worker threads
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE_SECONDS,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# Services commit explicitly; nothing is flushed behind their back
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency: request-scoped session, rolled back if the request fails"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Create any missing billing tables (Alembic owns schema changes)"""
    Base.metadata.create_all(bind=engine)
