"""
Database Module
===============

Provides database session management and base model.
"""

from app.db.base import Base, JSONDocument
from app.db.session import get_db, init_db, close_db

__all__ = ["Base", "JSONDocument", "get_db", "init_db", "close_db"]
