from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from teleconsulta.core.config import settings

Base = declarative_base()


def build_engine(database_url: str):
    """Create an engine for the SQL signaling backend."""
    url_lower = database_url.lower()
    connect_args = {}
    kwargs = {}
    if url_lower.startswith("sqlite"):
        # The signaling store queries from worker threads
        connect_args["check_same_thread"] = False
        if ":memory:" in url_lower or url_lower in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    elif "postgresql" in url_lower or "postgres" in url_lower:
        connect_args["client_encoding"] = "UTF8"
        kwargs["pool_pre_ping"] = True

    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query debugging
        **kwargs
    )


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = build_engine(settings.DATABASE_URL)
