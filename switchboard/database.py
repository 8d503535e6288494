from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from switchboard.config import settings

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create configuration tables that do not exist yet."""
    import switchboard.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
