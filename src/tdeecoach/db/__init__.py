"""SQLite storage for profiles, raw logs and derived metabolic state."""

from tdeecoach.db.connection import DatabaseConnection, get_db, set_db

__all__ = ["DatabaseConnection", "get_db", "set_db"]
