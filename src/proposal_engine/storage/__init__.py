"""Persistence layer: repository interface and SQLite implementation."""

from proposal_engine.storage.database import SQLiteRepository
from proposal_engine.storage.repository import Repository

__all__ = ["Repository", "SQLiteRepository"]
