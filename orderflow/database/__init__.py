"""Database package: async engine, sessions and ORM models."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db

__all__ = ["close_db", "get_db", "get_engine", "get_session_factory", "init_db"]
