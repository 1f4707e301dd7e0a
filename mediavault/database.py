from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from . import config


def make_engine(url: str):
    """Create an engine; sqlite connections are shared across FastAPI's worker threads."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


# Create the engine
engine = make_engine(config.DATABASE_URL)

# Create a SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for our models
Base = declarative_base()

# Dependency for API routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
