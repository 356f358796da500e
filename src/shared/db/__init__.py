"""Database engine, session factory, ORM models, and storage utilities."""

from .base import Base
from .engine import engine, make_engine
from .models import DAO, Activity, Checkpoint, ContractWatch, FailedEvent, Member, Proposal, Vote
from .session import SessionLocal, get_db
from .storage import ALLOWED_TABLES, export_to_csv


def init_db(bind=None) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)


__all__ = [
    # ORM infrastructure
    "Base",
    "engine",
    "make_engine",
    "SessionLocal",
    "get_db",
    "init_db",
    # ORM models
    "Checkpoint",
    "ContractWatch",
    "DAO",
    "Member",
    "Proposal",
    "Vote",
    "Activity",
    "FailedEvent",
    # Storage functions
    "export_to_csv",
    "ALLOWED_TABLES",
]
