"""Core module exports"""
from .config import settings, Settings
from .database import Base, engine, SessionLocal, session_scope, build_engine, build_session_factory, init_db

__all__ = [
    "settings",
    "Settings",
    "Base",
    "engine",
    "SessionLocal",
    "session_scope",
    "build_engine",
    "build_session_factory",
    "init_db",
]
