from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.settings import config_settings
from app.models.orm.base import Base

DATABASE_URL = config_settings.DATABASE_URL

# The engine manages the connection pool and dialect.
engine = create_engine(
    DATABASE_URL,
    # Only needed for SQLite to handle concurrent requests
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)

# Each request gets its own session (a unit of work).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Creates every table registered on the declarative Base."""
    # Import the ORM modules so their tables are registered on Base.metadata
    import app.models.orm.assignment  # noqa: F401
    import app.models.orm.experiment  # noqa: F401
    import app.models.orm.journey  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
