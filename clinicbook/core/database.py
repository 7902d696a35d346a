from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator
import time
import redis
from .config import settings

def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
        "pool_pre_ping": True,
    }

engine = create_engine(
    settings.get_database_url,
    **_engine_options(settings.get_database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Redis setup - in-process counter store for testing
if settings.TESTING:
    class RedisMock:
        def __init__(self):
            self.data = {}
            self.expiry = {}

        def _purge(self, key):
            deadline = self.expiry.get(key)
            if deadline is not None and deadline <= time.time():
                self.data.pop(key, None)
                self.expiry.pop(key, None)

        def get(self, key):
            self._purge(key)
            return self.data.get(key)

        def incr(self, key):
            self._purge(key)
            self.data[key] = str(int(self.data.get(key, "0")) + 1)
            return int(self.data[key])

        def expire(self, key, seconds):
            if key not in self.data:
                return False
            self.expiry[key] = time.time() + seconds
            return True

        def delete(self, key):
            self.expiry.pop(key, None)
            return 1 if self.data.pop(key, None) is not None else 0

        def flushall(self):
            self.data.clear()
            self.expiry.clear()
            return True

    redis_client = RedisMock()
else:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client

# Database initialization
def init_db():
    """Initialize database tables."""
    # Register every mapped class on Base.metadata
    from ..models import user, doctor, patient, slot, appointment, treatment_plan, refund  # noqa: F401
    Base.metadata.create_all(bind=engine)
