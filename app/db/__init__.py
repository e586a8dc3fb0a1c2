"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base
from app.db.session import get_db, get_session_factory, init_db, close_db

__all__ = ["Base", "get_db", "get_session_factory", "init_db", "close_db"]
