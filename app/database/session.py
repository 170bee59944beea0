"""
============================================================================
Loyalty Settlement Core v1.0.0
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: DATABASE_URL, or DB_* variables for PostgreSQL
Side Effects: Database connections

SOVEREIGN MANDATE:
- Engine created lazily so importing the API never opens a connection
- Connection pooling for the settlement store
- All timestamps UTC

============================================================================
"""

import os
import threading
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Resolve the connection URL.

    Environment Variables:
        DATABASE_URL: Full URL, overrides everything below
        DB_HOST: Database host (default: localhost)
        DB_PORT: Database port (default: 5432)
        DB_NAME: Database name (default: loyalty_settlement)
        DB_USER: Database user (default: settlement_app)
        DB_PASSWORD: Database password
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "loyalty_settlement")
    user = os.getenv("DB_USER", "settlement_app")
    password = os.getenv("DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"

# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def _create_engine(url: str) -> Engine:
    echo = os.getenv("DB_ECHO", "false").lower() == "true"
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})

    engine = create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_pre_ping=True,
        echo=echo,
        execution_options={
            "isolation_level": "READ COMMITTED"
        }
    )

    @event.listens_for(engine, "connect")
    def set_timezone(dbapi_connection, connection_record):
        """SOVEREIGN MANDATE: All timestamps must be UTC"""
        cursor = dbapi_connection.cursor()
        cursor.execute("SET timezone TO 'UTC'")
        cursor.close()

    return engine


def get_engine() -> Engine:
    """Process-wide engine, created on first use."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = _create_engine(get_database_url())
        return _engine


def reset_engine() -> None:
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
