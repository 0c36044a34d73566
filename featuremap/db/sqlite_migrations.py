"""Database schema creation and versioning.

All CREATE TABLE statements for the feature registry and the upstream
code-fact tables. Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging
import sqlite3

import aiosqlite

logger = logging.getLogger("featuremap.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Features ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS features (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_key     TEXT NOT NULL UNIQUE,
    domain          TEXT NOT NULL,
    subdomain       TEXT,
    title           TEXT NOT NULL,
    description     TEXT,
    status          TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('planned', 'active', 'deprecated', 'removed')),
    priority        TEXT NOT NULL DEFAULT 'standard'
        CHECK (priority IN ('critical', 'standard', 'nice-to-have')),
    portal_scope    TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at      TEXT NOT NULL DEFAULT (datetime('now')),
    removed_at      TEXT,
    removed_reason  TEXT
);

CREATE INDEX IF NOT EXISTS idx_features_domain ON features(domain, subdomain);
CREATE INDEX IF NOT EXISTS idx_features_status ON features(status);

-- Code files implementing a feature
CREATE TABLE IF NOT EXISTS feature_components (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    component_file  TEXT NOT NULL,
    component_name  TEXT NOT NULL DEFAULT '',
    role            TEXT NOT NULL DEFAULT 'implementation'
        CHECK (role IN ('implementation', 'ui', 'data', 'utility')),
    is_primary      INTEGER NOT NULL DEFAULT 0,
    UNIQUE (feature_id, component_file, component_name)
);

CREATE INDEX IF NOT EXISTS idx_components_file ON feature_components(component_file);

-- Backend procedures serving a feature
CREATE TABLE IF NOT EXISTS feature_procedures (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    router_name     TEXT NOT NULL,
    procedure_name  TEXT NOT NULL,
    procedure_type  TEXT,
    UNIQUE (feature_id, router_name, procedure_name)
);

CREATE INDEX IF NOT EXISTS idx_procedures_router ON feature_procedures(router_name);

-- Page routes where a feature is reachable
CREATE TABLE IF NOT EXISTS feature_pages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    page_route      TEXT NOT NULL,
    portal          TEXT NOT NULL DEFAULT '',
    UNIQUE (feature_id, page_route, portal)
);

CREATE INDEX IF NOT EXISTS idx_pages_route ON feature_pages(page_route);

-- Feature dependency graph
CREATE TABLE IF NOT EXISTS feature_deps (
    id                     INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id             INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    depends_on_feature_id  INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    dependency_type        TEXT NOT NULL DEFAULT 'requires'
        CHECK (dependency_type IN ('requires', 'enhances', 'replaces')),
    UNIQUE (feature_id, depends_on_feature_id)
);

-- Append-only lifecycle audit
CREATE TABLE IF NOT EXISTS feature_changelog (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    feature_id      INTEGER NOT NULL REFERENCES features(id) ON DELETE CASCADE,
    change_type     TEXT NOT NULL
        CHECK (change_type IN ('created', 'updated', 'deprecated', 'removed', 'restored')),
    changed_by      TEXT,
    change_detail   TEXT,
    commit_hash     TEXT,
    created_at      TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_changelog_feature ON feature_changelog(feature_id, created_at);

-- ── 2. Upstream code facts (written by the code-graph indexer) ─────
CREATE TABLE IF NOT EXISTS code_procedures (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    router_file     TEXT NOT NULL,
    router_name     TEXT NOT NULL,
    procedure_name  TEXT NOT NULL,
    procedure_type  TEXT NOT NULL DEFAULT 'query'
);

CREATE INDEX IF NOT EXISTS idx_code_procedures_router ON code_procedures(router_name, procedure_name);

CREATE TABLE IF NOT EXISTS page_deps (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    page_file       TEXT NOT NULL,
    route           TEXT NOT NULL,
    portal          TEXT NOT NULL DEFAULT 'unknown',
    components      TEXT NOT NULL DEFAULT '[]',
    routers         TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_page_deps_route ON page_deps(route);
"""

# Virtual tables and triggers are created separately from the plain tables.
_SEARCH_INDEX = """
CREATE VIRTUAL TABLE IF NOT EXISTS features_fts USING fts5(
    feature_key, title, description, domain, subdomain,
    content='features', content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS features_fts_ai AFTER INSERT ON features BEGIN
    INSERT INTO features_fts(rowid, feature_key, title, description, domain, subdomain)
    VALUES (new.id, new.feature_key, new.title, new.description, new.domain, new.subdomain);
END;

CREATE TRIGGER IF NOT EXISTS features_fts_ad AFTER DELETE ON features BEGIN
    INSERT INTO features_fts(features_fts, rowid, feature_key, title, description, domain, subdomain)
    VALUES ('delete', old.id, old.feature_key, old.title, old.description, old.domain, old.subdomain);
END;

CREATE TRIGGER IF NOT EXISTS features_fts_au AFTER UPDATE ON features BEGIN
    INSERT INTO features_fts(features_fts, rowid, feature_key, title, description, domain, subdomain)
    VALUES ('delete', old.id, old.feature_key, old.title, old.description, old.domain, old.subdomain);
    INSERT INTO features_fts(rowid, feature_key, title, description, domain, subdomain)
    VALUES (new.id, new.feature_key, new.title, new.description, new.domain, new.subdomain);
END;
"""


async def table_exists(db: aiosqlite.Connection, table: str) -> bool:
    async with db.execute(
        "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
        (table,),
    ) as cur:
        return await cur.fetchone() is not None


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables, the search index and its triggers. Idempotent."""
    # Check current schema version
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except sqlite3.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)
    await db.executescript(_SEARCH_INDEX)

    # Record schema version
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
