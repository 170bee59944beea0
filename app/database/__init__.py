# ============================================================================
# Loyalty Settlement Core v1.0.0
# Database Module - SQLAlchemy Engine Management
# ============================================================================

from app.database.session import get_database_url, get_engine, reset_engine

__all__ = ["get_database_url", "get_engine", "reset_engine"]
