import os
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set in .env file")

if DATABASE_URL.startswith("sqlite"):
    # Local development / tests: a single shared connection so in-memory
    # databases survive across sessions and threads
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        # Connection pool settings
        pool_pre_ping=True,        # Verify connections before using
        pool_recycle=1800,          # Recycle connections after 30 minutes
        echo=False,                 # Don't log SQL queries (set True for debugging)
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def get_db():
    """
    Dependency to get a SQLAlchemy session.
    Used with FastAPI Depends() for automatic session management.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_rollback(db):
    """Commit the unit of work; on failure roll the session back and re-raise."""
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
