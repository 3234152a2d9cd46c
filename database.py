import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL, DB_POOL_SIZE, DB_POOL_TIMEOUT
from models import Base

logger = logging.getLogger(__name__)


def build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    # A fixed pool; exhaustion raises sqlalchemy.exc.TimeoutError after pool_timeout.
    return create_engine(
        url,
        pool_size=DB_POOL_SIZE,
        max_overflow=0,
        pool_timeout=DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db():
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database schema ready ({engine.dialect.name})")


def ping_db():
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Session factory for code that opens short-lived sessions itself (the relay)."""
    return SessionLocal
