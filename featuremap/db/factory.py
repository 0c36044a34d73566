"""Repository factory so callers never construct repositories by hand."""
from __future__ import annotations

import aiosqlite

from featuremap.db.repositories.facts import SqliteCodeFactRepository
from featuremap.db.repositories.features import SqliteFeatureRepository


def get_feature_repository(db: aiosqlite.Connection) -> SqliteFeatureRepository:
    return SqliteFeatureRepository(db)


def get_fact_repository(db: aiosqlite.Connection) -> SqliteCodeFactRepository:
    return SqliteCodeFactRepository(db)
