"""
Database models package - SQLAlchemy ORM models
"""

from .document import DocumentRecord

__all__ = [
    "DocumentRecord",
]
