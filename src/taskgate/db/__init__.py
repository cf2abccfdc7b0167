"""Database layer."""

from taskgate.db.base import Base, build_engine, build_session_factory, close_db, init_db

__all__ = ["Base", "build_engine", "build_session_factory", "close_db", "init_db"]
