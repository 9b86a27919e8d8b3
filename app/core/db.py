from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.settings import config_settings
from app.models.orm.base import Base

# Import the models so their tables are registered on Base.metadata
from app.models.orm import experiment as _experiment_models  # noqa: F401
from app.models.orm import exposure as _exposure_models  # noqa: F401


def build_engine(database_url: str) -> Engine:
    """
    Creates the SQLAlchemy engine for ``database_url``.

    Config lookups and exposure writes run in worker threads, so SQLite
    connections must be allowed to cross threads.
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
        pool_pre_ping=not database_url.startswith("sqlite"),
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(bind: Engine) -> None:
    """Creates any missing tables."""
    Base.metadata.create_all(bind=bind)


# Each request gets its own session (a unit of work) from this factory.
engine = build_engine(config_settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


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
