"""
Database module for SQLAlchemy models and session management.
"""

from harvester.db.base import Base
from harvester.db.session import build_engine, get_db_context, get_session_factory

__all__ = ["Base", "build_engine", "get_db_context", "get_session_factory"]
