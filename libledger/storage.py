import os
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv

load_dotenv()

SQLALCHEMY_DATABASE_URL = os.getenv("SQLALCHEMY_DATABASE_URL", "sqlite:///./library.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def register_sqlite_functions(target: Engine) -> None:
    """Replace SQLite's ASCII-only LOWER with a Unicode-aware one."""

    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.create_function(
            "lower", 1, _unicode_lower, deterministic=True
        )


if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
    )
    register_sqlite_functions(engine)
else:
    # Fixed-size pool; requests beyond capacity wait for a free connection
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_size=DB_POOL_SIZE,
        max_overflow=0,
        pool_timeout=DB_POOL_TIMEOUT,
        pool_pre_ping=True,
    )
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
