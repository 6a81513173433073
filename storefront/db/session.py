from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine
from storefront.core.config import settings

class Base(DeclarativeBase): pass

def _connect_args(dsn: str) -> dict:
    # SQLite is used for local runs and tests; worker threads share the file
    if dsn.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}

engine = create_engine(settings.POSTGRES_DSN, pool_pre_ping=True, connect_args=_connect_args(settings.POSTGRES_DSN))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
