"""SQLite implementation of the feature registry repository."""
from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable

import aiosqlite

from featuremap import config
from featuremap.models import (
    SCANNER_ACTOR,
    Feature,
    FeatureChangeLog,
    FeatureComponent,
    FeatureDep,
    FeatureDetail,
    FeatureInput,
    FeaturePage,
    FeatureProcedure,
    FeatureWithCounts,
)
from featuremap.path_utils import normalize_file_path

logger = logging.getLogger("featuremap.registry")

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
_CHUNK_SIZE = 500

_COUNT_COLUMNS = """
    (SELECT COUNT(*) FROM feature_components WHERE feature_id = s.id) AS component_count,
    (SELECT COUNT(*) FROM feature_procedures WHERE feature_id = s.id) AS procedure_count,
    (SELECT COUNT(*) FROM feature_pages WHERE feature_id = s.id) AS page_count
"""

_OWNED_TABLES = (
    "feature_components",
    "feature_procedures",
    "feature_pages",
    "feature_changelog",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunks(values: list, size: int = _CHUNK_SIZE) -> Iterable[list]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _parse_portal_scope(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        return []
    return [str(v) for v in parsed] if isinstance(parsed, list) else []


def sanitize_fts_query(query: str) -> str:
    """Turn free text into quoted FTS5 terms (implicit AND).

    Quoting every token keeps operators and punctuation in user input from
    being parsed as FTS5 syntax.
    """
    tokens = re.findall(r"[\w./-]+", query or "")
    return " ".join('"' + token.replace('"', '""') + '"' for token in tokens)


def row_to_feature(row: aiosqlite.Row | dict) -> Feature:
    data = dict(row)
    return Feature(
        id=data["id"],
        feature_key=data["feature_key"],
        domain=data["domain"],
        subdomain=data.get("subdomain") or None,
        title=data["title"],
        description=data.get("description") or None,
        status=data["status"],
        priority=data["priority"],
        portal_scope=_parse_portal_scope(data.get("portal_scope")),
        created_at=data.get("created_at") or "",
        updated_at=data.get("updated_at") or "",
        removed_at=data.get("removed_at") or None,
        removed_reason=data.get("removed_reason") or None,
    )


def _row_to_component(row: aiosqlite.Row) -> FeatureComponent:
    data = dict(row)
    data["component_name"] = data.get("component_name") or None
    data["is_primary"] = bool(data.get("is_primary"))
    return FeatureComponent(**data)


def _row_to_page(row: aiosqlite.Row) -> FeaturePage:
    data = dict(row)
    data["portal"] = data.get("portal") or None
    return FeaturePage(**data)


class SqliteFeatureRepository:
    """SQLite-backed feature registry with linked components, procedures, pages,
    dependencies and an append-only changelog.

    Single-row write methods commit on their own. Inside ``transaction()`` use
    the ``commit=False`` variants so the whole batch lands or rolls back as one.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqliteFeatureRepository"]:
        try:
            yield self
        except BaseException:
            await self.db.rollback()
            raise
        else:
            await self.db.commit()

    # ── Core CRUD ──────────────────────────────────────────────────

    async def upsert(self, feature: FeatureInput, commit: bool = True) -> int:
        """Insert a new feature or update the provided fields of an existing one.

        Returns the feature id, which never changes for a given feature_key.
        Omitted (None) fields keep their stored value on update; on insert,
        status defaults to active, priority to standard and portal_scope to [].
        """
        now = _now()
        portal_scope = json.dumps(feature.portal_scope) if feature.portal_scope is not None else None

        await self.db.execute(
            """INSERT INTO features (
                feature_key, domain, subdomain, title, description,
                status, priority, portal_scope, created_at, updated_at
            ) VALUES (
                ?, COALESCE(?, 'system'), ?, COALESCE(?, ?), ?,
                COALESCE(?, 'active'), COALESCE(?, 'standard'), COALESCE(?, '[]'), ?, ?
            )
            ON CONFLICT(feature_key) DO UPDATE SET
                domain=COALESCE(?, domain),
                subdomain=COALESCE(?, subdomain),
                title=COALESCE(?, title),
                description=COALESCE(?, description),
                status=COALESCE(?, status),
                priority=COALESCE(?, priority),
                portal_scope=COALESCE(?, portal_scope),
                updated_at=?
            """,
            (
                feature.feature_key, feature.domain, feature.subdomain,
                feature.title, feature.feature_key, feature.description,
                feature.status, feature.priority, portal_scope, now, now,
                feature.domain, feature.subdomain, feature.title, feature.description,
                feature.status, feature.priority, portal_scope, now,
            ),
        )
        async with self.db.execute(
            "SELECT id FROM features WHERE feature_key = ?", (feature.feature_key,)
        ) as cur:
            row = await cur.fetchone()
        if commit:
            await self.db.commit()
        return int(row[0])

    async def bulk_upsert(self, features: list[FeatureInput]) -> int:
        """Upsert every feature in one transaction. Returns the number applied."""
        count = 0
        async with self.transaction():
            for feature in features:
                await self.upsert(feature, commit=False)
                count += 1
        return count

    async def get_by_key(self, feature_key: str) -> Feature | None:
        async with self.db.execute(
            "SELECT * FROM features WHERE feature_key = ?", (feature_key,)
        ) as cur:
            row = await cur.fetchone()
            return row_to_feature(row) if row else None

    async def get_by_id(self, feature_id: int) -> Feature | None:
        async with self.db.execute(
            "SELECT * FROM features WHERE id = ?", (feature_id,)
        ) as cur:
            row = await cur.fetchone()
            return row_to_feature(row) if row else None

    async def list_active(self, domain: str | None = None) -> list[Feature]:
        query = "SELECT * FROM features WHERE status = 'active'"
        params: list = []
        if domain:
            query += " AND domain = ?"
            params.append(domain)
        query += " ORDER BY domain, feature_key"
        async with self.db.execute(query, params) as cur:
            return [row_to_feature(r) for r in await cur.fetchall()]

    async def list_by_domain(self, domain: str) -> list[Feature]:
        async with self.db.execute(
            "SELECT * FROM features WHERE domain = ? ORDER BY subdomain, feature_key",
            (domain,),
        ) as cur:
            return [row_to_feature(r) for r in await cur.fetchall()]

    async def list_by_file(self, file_path: str) -> list[Feature]:
        async with self.db.execute(
            """SELECT DISTINCT s.* FROM features s
               JOIN feature_components c ON c.feature_id = s.id
               WHERE c.component_file = ?
               ORDER BY s.feature_key""",
            (normalize_file_path(file_path),),
        ) as cur:
            return [row_to_feature(r) for r in await cur.fetchall()]

    async def list_by_route(self, route: str) -> list[Feature]:
        async with self.db.execute(
            """SELECT DISTINCT s.* FROM features s
               JOIN feature_pages p ON p.feature_id = s.id
               WHERE p.page_route = ?
               ORDER BY s.feature_key""",
            (route,),
        ) as cur:
            return [row_to_feature(r) for r in await cur.fetchall()]

    async def count_keys(self, feature_keys: list[str]) -> int:
        total = 0
        for chunk in _chunks(list(feature_keys)):
            placeholders = ",".join("?" for _ in chunk)
            async with self.db.execute(
                f"SELECT COUNT(*) FROM features WHERE feature_key IN ({placeholders})",
                chunk,
            ) as cur:
                row = await cur.fetchone()
                total += int(row[0] or 0)
        return total

    # ── Search ─────────────────────────────────────────────────────

    async def search(
        self,
        query: str = "",
        *,
        domain: str | None = None,
        subdomain: str | None = None,
        status: str | None = None,
        portal: str | None = None,
        page_route: str | None = None,
        limit: int | None = None,
    ) -> list[FeatureWithCounts]:
        """Relevance search over the FTS mirror, or a filter scan for empty queries."""
        match = sanitize_fts_query(query)
        if (query or "").strip() and not match:
            return []
        params: list = []
        if match:
            sql = f"""
                SELECT s.*, {_COUNT_COLUMNS}
                FROM features s
                JOIN features_fts fts ON s.id = fts.rowid
                WHERE features_fts MATCH ?
            """
            params.append(match)
        else:
            sql = f"SELECT s.*, {_COUNT_COLUMNS} FROM features s WHERE 1=1"

        if domain:
            sql += " AND s.domain = ?"
            params.append(domain)
        if subdomain:
            sql += " AND s.subdomain = ?"
            params.append(subdomain)
        if status:
            sql += " AND s.status = ?"
            params.append(status)
        if portal:
            escaped = re.sub(r"([%_\\])", r"\\\1", portal)
            sql += " AND s.portal_scope LIKE ? ESCAPE '\\'"
            params.append(f'%"{escaped}"%')
        if page_route:
            sql += " AND s.id IN (SELECT feature_id FROM feature_pages WHERE page_route = ?)"
            params.append(page_route)

        sql += " ORDER BY fts.rank" if match else " ORDER BY s.feature_key"
        sql += " LIMIT ?"
        params.append(limit or config.SEARCH_LIMIT)

        async with self.db.execute(sql, params) as cur:
            rows = await cur.fetchall()

        results: list[FeatureWithCounts] = []
        for row in rows:
            feature = row_to_feature(row)
            results.append(
                FeatureWithCounts(
                    **feature.model_dump(),
                    component_count=row["component_count"],
                    procedure_count=row["procedure_count"],
                    page_count=row["page_count"],
                )
            )
        return results

    # ── Detail ─────────────────────────────────────────────────────

    async def get_components(self, feature_id: int) -> list[FeatureComponent]:
        async with self.db.execute(
            "SELECT * FROM feature_components WHERE feature_id = ? ORDER BY id",
            (feature_id,),
        ) as cur:
            return [_row_to_component(r) for r in await cur.fetchall()]

    async def get_procedures(self, feature_id: int) -> list[FeatureProcedure]:
        async with self.db.execute(
            "SELECT * FROM feature_procedures WHERE feature_id = ? ORDER BY id",
            (feature_id,),
        ) as cur:
            return [FeatureProcedure(**dict(r)) for r in await cur.fetchall()]

    async def get_pages(self, feature_id: int) -> list[FeaturePage]:
        async with self.db.execute(
            "SELECT * FROM feature_pages WHERE feature_id = ? ORDER BY id",
            (feature_id,),
        ) as cur:
            return [_row_to_page(r) for r in await cur.fetchall()]

    async def get_dependencies(self, feature_id: int) -> list[FeatureDep]:
        async with self.db.execute(
            "SELECT * FROM feature_deps WHERE feature_id = ? ORDER BY id",
            (feature_id,),
        ) as cur:
            return [FeatureDep(**dict(r)) for r in await cur.fetchall()]

    async def get_changelog(self, feature_id: int, limit: int | None = None) -> list[FeatureChangeLog]:
        async with self.db.execute(
            """SELECT * FROM feature_changelog WHERE feature_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (feature_id, limit or config.CHANGELOG_LIMIT),
        ) as cur:
            return [FeatureChangeLog(**dict(r)) for r in await cur.fetchall()]

    async def components_for_active(self) -> dict[int, list[FeatureComponent]]:
        """Components of every active feature, grouped by feature id."""
        grouped: dict[int, list[FeatureComponent]] = {}
        async with self.db.execute(
            """SELECT c.* FROM feature_components c
               JOIN features s ON s.id = c.feature_id
               WHERE s.status = 'active'
               ORDER BY c.feature_id, c.id"""
        ) as cur:
            for row in await cur.fetchall():
                component = _row_to_component(row)
                grouped.setdefault(component.feature_id, []).append(component)
        return grouped

    async def feature_ids_for_files(self, file_paths: list[str]) -> set[int]:
        feature_ids: set[int] = set()
        for chunk in _chunks(list(file_paths)):
            placeholders = ",".join("?" for _ in chunk)
            async with self.db.execute(
                f"SELECT DISTINCT feature_id FROM feature_components WHERE component_file IN ({placeholders})",
                chunk,
            ) as cur:
                feature_ids.update(int(r[0]) for r in await cur.fetchall())
        return feature_ids

    async def get_detail(self, key_or_id: str | int) -> FeatureDetail | None:
        if isinstance(key_or_id, int):
            feature = await self.get_by_id(key_or_id)
        else:
            feature = await self.get_by_key(key_or_id)
        if feature is None:
            return None

        return FeatureDetail(
            **feature.model_dump(),
            components=await self.get_components(feature.id),
            procedures=await self.get_procedures(feature.id),
            pages=await self.get_pages(feature.id),
            dependencies=await self.get_dependencies(feature.id),
            changelog=await self.get_changelog(feature.id),
        )

    # ── Links ──────────────────────────────────────────────────────

    async def link_component(
        self,
        feature_id: int,
        file_path: str,
        component_name: str | None = None,
        role: str = "implementation",
        is_primary: bool = False,
        commit: bool = True,
    ) -> None:
        await self.db.execute(
            """INSERT INTO feature_components
                (feature_id, component_file, component_name, role, is_primary)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(feature_id, component_file, component_name) DO UPDATE SET
                role=excluded.role, is_primary=excluded.is_primary""",
            (feature_id, normalize_file_path(file_path), component_name or "", role, 1 if is_primary else 0),
        )
        if commit:
            await self.db.commit()

    async def link_procedure(
        self,
        feature_id: int,
        router_name: str,
        procedure_name: str,
        procedure_type: str | None = None,
        commit: bool = True,
    ) -> None:
        await self.db.execute(
            """INSERT INTO feature_procedures
                (feature_id, router_name, procedure_name, procedure_type)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(feature_id, router_name, procedure_name) DO UPDATE SET
                procedure_type=COALESCE(excluded.procedure_type, procedure_type)""",
            (feature_id, router_name, procedure_name, procedure_type),
        )
        if commit:
            await self.db.commit()

    async def link_page(
        self,
        feature_id: int,
        route: str,
        portal: str | None = None,
        commit: bool = True,
    ) -> None:
        await self.db.execute(
            """INSERT INTO feature_pages (feature_id, page_route, portal)
               VALUES (?, ?, ?)
               ON CONFLICT(feature_id, page_route, portal) DO NOTHING""",
            (feature_id, route, portal or ""),
        )
        if commit:
            await self.db.commit()

    async def link_dependency(
        self,
        feature_id: int,
        depends_on_feature_id: int,
        dependency_type: str = "requires",
        commit: bool = True,
    ) -> None:
        await self.db.execute(
            """INSERT INTO feature_deps (feature_id, depends_on_feature_id, dependency_type)
               VALUES (?, ?, ?)
               ON CONFLICT(feature_id, depends_on_feature_id) DO UPDATE SET
                dependency_type=excluded.dependency_type""",
            (feature_id, depends_on_feature_id, dependency_type),
        )
        if commit:
            await self.db.commit()

    # ── Changelog & lifecycle ──────────────────────────────────────

    async def log_change(
        self,
        feature_id: int,
        change_type: str,
        detail: str | None = None,
        commit_hash: str | None = None,
        changed_by: str = "user",
        commit: bool = True,
    ) -> None:
        await self.db.execute(
            """INSERT INTO feature_changelog
                (feature_id, change_type, changed_by, change_detail, commit_hash, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (feature_id, change_type, changed_by, detail, commit_hash, _now()),
        )
        if commit:
            await self.db.commit()

    async def set_status(
        self,
        feature_id: int,
        status: str,
        changed_by: str = "user",
        detail: str | None = None,
        commit: bool = True,
    ) -> None:
        """Move a feature through its lifecycle and record the transition."""
        now = _now()
        if status == "removed":
            await self.db.execute(
                """UPDATE features SET status = 'removed', removed_at = ?,
                   removed_reason = ?, updated_at = ? WHERE id = ?""",
                (now, detail, now, feature_id),
            )
            change_type = "removed"
        elif status == "active":
            await self.db.execute(
                """UPDATE features SET status = 'active', removed_at = NULL,
                   removed_reason = NULL, updated_at = ? WHERE id = ?""",
                (now, feature_id),
            )
            change_type = "restored"
        else:
            await self.db.execute(
                "UPDATE features SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, feature_id),
            )
            change_type = "deprecated" if status == "deprecated" else "updated"
        await self.log_change(feature_id, change_type, detail, changed_by=changed_by, commit=False)
        if commit:
            await self.db.commit()

    # ── Garbage collection ─────────────────────────────────────────

    async def _delete_features(self, feature_ids: list[int]) -> None:
        for chunk in _chunks(feature_ids):
            placeholders = ",".join("?" for _ in chunk)
            for table in _OWNED_TABLES:
                await self.db.execute(
                    f"DELETE FROM {table} WHERE feature_id IN ({placeholders})", chunk
                )
            await self.db.execute(
                f"""DELETE FROM feature_deps
                    WHERE feature_id IN ({placeholders})
                       OR depends_on_feature_id IN ({placeholders})""",
                chunk + chunk,
            )
            await self.db.execute(
                f"DELETE FROM features WHERE id IN ({placeholders})", chunk
            )

    async def clear_auto_discovered(self, commit: bool = True) -> int:
        """Hard-delete features whose changelog was written only by the scanner.

        Any changelog row from another actor (including a NULL actor) keeps the
        feature. Returns the number of features deleted. With ``commit=False``
        the deletes join the caller's open transaction.
        """
        async with self.db.execute(
            """SELECT feature_id FROM feature_changelog
               GROUP BY feature_id
               HAVING SUM(CASE WHEN changed_by = ? THEN 0 ELSE 1 END) = 0""",
            (SCANNER_ACTOR,),
        ) as cur:
            feature_ids = [int(r[0]) for r in await cur.fetchall()]

        if not feature_ids:
            return 0

        if commit:
            async with self.transaction():
                await self._delete_features(feature_ids)
        else:
            await self._delete_features(feature_ids)
        logger.info(f"Cleared {len(feature_ids)} auto-discovered features")
        return len(feature_ids)
