import logging

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from oj_runner.core.config import settings
from oj_runner.db.base import Base

logger = logging.getLogger(__name__)

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args={"connect_timeout": 30} if settings.DATABASE_URL.startswith("postgresql://") else {}
)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def get_db():
    """Dependency for FastAPI to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create the Problem and Submission tables if they do not exist.

    If the database is temporarily unreachable the error is logged and startup
    continues; judging requests fail with a persistence error until it returns.
    """
    import oj_runner.models  # noqa: F401  register tables on Base.metadata

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.warning("init_db_create_all_failed", extra={"error": str(e)})
