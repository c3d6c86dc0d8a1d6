import os
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Prefer explicit DATABASE_URL env var. If not provided, construct a safe
# local SQLite URL in a `data/` folder adjacent to the package directory.
env_db = os.getenv("DATABASE_URL")
if env_db:
    DATABASE_URL = env_db
else:
    pkg_root = Path(__file__).resolve().parents[1]
    data_dir = pkg_root / "data"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        # best-effort; if creating fails fall back to in-memory DB
        data_dir = None
    if data_dir:
        db_file = data_dir / "obatku_qr.db"
        # Use POSIX path style for SQLAlchemy URL on Windows as well
        DATABASE_URL = f"sqlite:///{db_file.as_posix()}"
    else:
        DATABASE_URL = "sqlite:///:memory:"

print(f"[obatku_core] Using DATABASE_URL: {DATABASE_URL}")


def engine_options(url: str) -> dict:
    """Connection arguments shared by the app engine and test engines."""
    if url.startswith("sqlite"):
        # Writers wait on the database lock instead of failing straight away
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


# Use echo=False in production; set echo=True for debugging
engine = create_engine(DATABASE_URL, **engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def create_db_and_tables(bind=None):
    from . import models  # noqa: F401  register tables on Base.metadata
    Base.metadata.create_all(bind=bind or engine)
