from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from .config import settings


def build_engine(url=None):
    url = url or settings.DATABASE_URL
    if url.startswith('sqlite'):
        return create_engine(url, echo=False)
    return create_engine(
        url,
        echo=False,
        pool_size=20,          # scheduled runs for many connections share the pool
        max_overflow=20,
        pool_timeout=30,
        pool_pre_ping=True,
    )


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
