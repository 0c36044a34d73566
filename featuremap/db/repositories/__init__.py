"""Repository package for database access."""

from .features import SqliteFeatureRepository
from .facts import SqliteCodeFactRepository

__all__ = [
    "SqliteFeatureRepository",
    "SqliteCodeFactRepository",
]
