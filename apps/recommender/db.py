# apps/recommender/db.py
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from config import settings

engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def transaction(session_factory=SessionLocal):
    """Commit on success, roll back and re-raise on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def healthcheck():
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
