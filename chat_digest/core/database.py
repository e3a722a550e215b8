# chat_digest/core/database.py

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from chat_digest.core.config import settings

DATABASE_URL = settings.DATABASE_URL


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections are shared with worker threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        echo=False,  # Set to True to see SQL queries
        connect_args=connect_args,
        **kwargs,
    )


# Create database engine
engine = build_engine(DATABASE_URL)


def init_db(bind: Engine = None) -> None:
    """Initialize the database, creating all tables."""
    # Table classes register themselves on import
    import chat_digest.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)
