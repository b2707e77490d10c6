"""Database session management with connection pooling"""

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from settlement_gateway.domain.exceptions import ConcurrentModification, DomainException
from settlement_gateway.config import settings

# Rows are locked FOR UPDATE for the length of a request, keep the pool modest
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=10,
    pool_recycle=3600,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """Dependency injection for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transactional(db: Session):
    """
    Run one unit of work: commit on success, roll back on any error.

    Lost optimistic-version checks and unique-constraint races surface as
    ConcurrentModification so the API reports them as conflicts.
    """
    try:
        yield db
        db.commit()
    except DomainException:
        db.rollback()
        raise
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentModification("Record was changed by another request, reload and retry") from e
    except IntegrityError as e:
        db.rollback()
        raise ConcurrentModification(f"Concurrent change violated a constraint: {e.orig}") from e
    except Exception:
        db.rollback()
        raise
