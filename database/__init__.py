"""
Database layer — journey locations in SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async).

Quick start:
  from database import create_session_factory, init_db, SqlLocationStore
  factory = create_session_factory("sqlite:///./journeys.db")
  await init_db(factory)
  store = SqlLocationStore(factory)
"""
from database.models import Base, JourneyLocationRow
from database.session import create_session_factory, session_scope, init_db, close_db
from database.location_store import SqlLocationStore

__all__ = [
    # ORM models
    "Base", "JourneyLocationRow",
    # Session management
    "create_session_factory", "session_scope", "init_db", "close_db",
    # Store
    "SqlLocationStore",
]
