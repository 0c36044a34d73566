"""SQLite access to the upstream code-fact tables (procedures and page deps)."""
from __future__ import annotations

import json
import logging

import aiosqlite

from featuremap.db.sqlite_migrations import table_exists
from featuremap.models import PageFact, ProcedureFact

logger = logging.getLogger("featuremap.db")


def _safe_json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        return []
    return [str(v) for v in parsed if isinstance(v, str)] if isinstance(parsed, list) else []


class SqliteCodeFactRepository:
    """Read side of the indexer output, plus writers used by indexers and tests.

    A missing table reads as empty so callers can treat an unsynced project
    as "nothing discovered".
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_procedures(self) -> list[ProcedureFact]:
        if not await table_exists(self.db, "code_procedures"):
            logger.info("code_procedures table missing; no procedure facts")
            return []
        async with self.db.execute(
            """SELECT router_name, procedure_name, procedure_type, router_file
               FROM code_procedures ORDER BY router_name, procedure_name"""
        ) as cur:
            return [ProcedureFact(**dict(r)) for r in await cur.fetchall()]

    async def list_pages(self) -> list[PageFact]:
        if not await table_exists(self.db, "page_deps"):
            logger.info("page_deps table missing; no page facts")
            return []
        async with self.db.execute(
            "SELECT page_file, route, portal, components, routers FROM page_deps ORDER BY route"
        ) as cur:
            rows = await cur.fetchall()
        return [
            PageFact(
                page_file=row["page_file"],
                route=row["route"],
                portal=row["portal"] or "unknown",
                components=_safe_json_list(row["components"]),
                routers=_safe_json_list(row["routers"]),
            )
            for row in rows
        ]

    async def known_procedures(self) -> set[tuple[str, str]]:
        return {(p.router_name, p.procedure_name) for p in await self.list_procedures()}

    async def known_routes(self) -> set[str]:
        return {p.route for p in await self.list_pages()}

    async def replace_procedures(self, procedures: list[ProcedureFact]) -> None:
        await self.db.execute("DELETE FROM code_procedures")
        await self.db.executemany(
            """INSERT INTO code_procedures (router_file, router_name, procedure_name, procedure_type)
               VALUES (?, ?, ?, ?)""",
            [(p.router_file, p.router_name, p.procedure_name, p.procedure_type) for p in procedures],
        )
        await self.db.commit()

    async def replace_pages(self, pages: list[PageFact]) -> None:
        await self.db.execute("DELETE FROM page_deps")
        await self.db.executemany(
            """INSERT INTO page_deps (page_file, route, portal, components, routers)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (p.page_file, p.route, p.portal, json.dumps(p.components), json.dumps(p.routers))
                for p in pages
            ],
        )
        await self.db.commit()
