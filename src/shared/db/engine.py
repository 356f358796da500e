from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

from src.shared.config import Config


def make_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite URLs keep SQLAlchemy's default pool."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        echo=echo,
    )


DATABASE_URL = Config().database_url

engine = make_engine(DATABASE_URL)
