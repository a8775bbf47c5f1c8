import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from customer_import.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log where the engine tried to connect without leaking the password."""
    logger.warning("Could not connect to database: %s", exc)
    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s)", parse_error)
        return

    masked_url = url._replace(password="***" if url.password else None)
    logger.warning(
        "Database settings: dialect=%s host=%s port=%s database=%s user=%s",
        masked_url.get_backend_name(),
        masked_url.host or "localhost",
        masked_url.port or "(default)",
        masked_url.database,
        masked_url.username,
    )


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Keep the engine so callers can retry once the database is reachable.
            _engine = create_engine(settings.database_url)
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def init_db(engine=None) -> None:
    """Create every table registered on ``Base`` (import pipeline and customers)."""
    # Model modules register their tables on import.
    from customer_import.db import models  # noqa: F401
    from customer_import.domain.customers import store  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
