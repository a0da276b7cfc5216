from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from voyaj.config import get_settings
import logging
import os

logger = logging.getLogger(__name__)
settings = get_settings()

db_url = settings.database_url

connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
engine = create_engine(db_url, connect_args=connect_args)


# Without this SQLite ignores ON DELETE CASCADE
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    if not db_url.startswith("sqlite"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create tables that do not exist yet."""
    import voyaj.models  # noqa: F401  registers the tables on Base

    bind = bind or engine
    if str(bind.url).startswith("sqlite:///./"):
        os.makedirs(os.path.dirname(str(bind.url).replace("sqlite:///", "")), exist_ok=True)
    Base.metadata.create_all(bind=bind)
    logger.info(f"Database ready ({len(Base.metadata.tables)} tables)")
