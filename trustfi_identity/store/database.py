from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from trustfi_identity.logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()


def make_engine(database_url: str, **kwargs) -> Engine:
    """Creates an engine for ``database_url``; SQLite connections may be shared across threads."""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(database_url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine):
    """Creates all database tables defined by models inheriting from Base."""
    # Importing registers the models on Base.metadata.
    from trustfi_identity.store import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database tables created (if they didn't exist) at {engine.url.render_as_string(hide_password=True)}")
