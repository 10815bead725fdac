"""
PanelAuth Database Connection
Engine construction, session factories and unit-of-work scope.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from panelauth.core.config import Settings, get_settings
from panelauth.core.logging import get_logger
from .models import Base

logger = get_logger(__name__)


def _connect_args(url: str, timeout: int) -> Dict[str, Any]:
    """Bound every store round trip by the configured timeout"""
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if url.startswith("postgresql"):
        return {
            "connect_timeout": timeout,
            "options": f"-c statement_timeout={timeout * 1000}",
        }
    if url.startswith("mysql"):
        return {"connect_timeout": timeout, "read_timeout": timeout, "write_timeout": timeout}
    return {}


def create_engine_from_settings(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    url = settings.DATABASE_URL
    engine = create_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        connect_args=_connect_args(url, settings.DATABASE_TIMEOUT),
    )
    logger.debug(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet"""
    Base.metadata.create_all(engine)
    logger.info("Database schema initialized")


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back on error"""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
