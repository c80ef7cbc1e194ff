"""Database connection and session management."""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator

from abengine.config import get_settings

settings = get_settings()

# SQLite needs cross-thread access: request handlers and background jobs share the engine
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

# Create database engine
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    echo=settings.debug,
    connect_args=connect_args
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.

    Usage:
        @app.get("/health/detailed")
        def detailed(db: Session = Depends(get_db)):
            db.execute(text("SELECT 1"))
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
