from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from render_engine.settings import get_settings

Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # SQLite connections are shared across the threadpool FastAPI runs sync dependencies on.
        pool = StaticPool if ":memory:" in database_url else None
        kwargs = {"connect_args": {"check_same_thread": False}}
        if pool is not None:
            kwargs["poolclass"] = pool
        return create_engine(database_url, **kwargs)
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        echo=False,
    )


settings = get_settings()

# Product database (dashboards, charts, users, roles, token blacklist)
engine = build_engine(settings.app_db_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db():
    """Dependency for getting db session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
