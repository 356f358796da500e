from contextlib import contextmanager

from sqlalchemy.orm import sessionmaker

from .engine import engine

# Rows stay readable after commit; components hand snapshots across threads
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def get_db(session_factory=None):
    """One transaction: commit on success, roll back on any exception.

    Components accept their own session factory (tests bind one to SQLite);
    without it the module-level SessionLocal is used.
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
