"""Registry self-validation against the current code base."""
from __future__ import annotations

import logging
import re
from pathlib import Path

import aiosqlite

from featuremap import config
from featuremap.config import RegistryConfig
from featuremap.db.factory import get_fact_repository, get_feature_repository
from featuremap.db.sqlite_migrations import table_exists
from featuremap.models import (
    DEFAULT_ACTOR,
    FeatureComponent,
    MissingProcedure,
    ValidationItem,
    ValidationReport,
)
from featuremap.path_utils import unique_paths

logger = logging.getLogger("featuremap.validation")

_PAGE_FILENAMES = ("page.tsx", "page.ts", "page.jsx", "page.js")
_PORTAL_PREFIX = re.compile(r"^/(portal-[^/]+/)?")


def page_file_exists(project_root: Path, app_dir: str, route: str) -> bool:
    """Check the `<app_dir>/<route>/page.*` convention, with and without a portal prefix."""
    relative_routes = {
        _PORTAL_PREFIX.sub("", route).strip("/"),
        route.strip("/"),
    }
    base = project_root / app_dir
    for relative in relative_routes:
        directory = base / relative if relative else base
        if any((directory / name).exists() for name in _PAGE_FILENAMES):
            return True
    return False


def classify_validation(
    components: list[FeatureComponent],
    missing_components: list[str],
    missing_procedures: list[MissingProcedure],
    missing_pages: list[str],
) -> str:
    primary = unique_paths(c.component_file for c in components if c.is_primary)
    missing = set(missing_components)
    if primary and all(path in missing for path in primary):
        return "orphaned"
    if missing_components or missing_procedures or missing_pages:
        return "degraded"
    return "alive"


async def validate_features(
    db: aiosqlite.Connection,
    project_root: Path | str | None = None,
    registry_config: RegistryConfig | None = None,
    domain: str | None = None,
) -> ValidationReport:
    """Check every active feature's linked artifacts against ground truth.

    Components are checked on disk, procedures against the indexed procedure
    table and pages against indexed routes (or the app directory when no
    routes have been indexed). An empty procedure table flags nothing.
    """
    report = ValidationReport()
    if not await table_exists(db, "features"):
        logger.info("Feature registry not initialized; skipping validation")
        return report

    root = Path(project_root) if project_root is not None else config.PROJECT_ROOT
    registry_config = registry_config or RegistryConfig()
    repo = get_feature_repository(db)
    facts = get_fact_repository(db)
    known_procedures = await facts.known_procedures()
    known_routes = await facts.known_routes()

    for feature in await repo.list_active(domain):
        components = await repo.get_components(feature.id)
        procedures = await repo.get_procedures(feature.id)
        pages = await repo.get_pages(feature.id)

        missing_components = [
            path for path in unique_paths(c.component_file for c in components)
            if not (root / path).exists()
        ]

        missing_procedures: list[MissingProcedure] = []
        if known_procedures:
            for proc in procedures:
                if (proc.router_name, proc.procedure_name) not in known_procedures:
                    missing_procedures.append(
                        MissingProcedure(router=proc.router_name, procedure=proc.procedure_name)
                    )

        missing_pages: list[str] = []
        for page in pages:
            if page.page_route in missing_pages:
                continue
            if known_routes:
                if page.page_route not in known_routes:
                    missing_pages.append(page.page_route)
            elif page.page_route.startswith("/") and not page_file_exists(
                root, registry_config.app_dir, page.page_route
            ):
                missing_pages.append(page.page_route)

        status = classify_validation(components, missing_components, missing_procedures, missing_pages)
        if status == "orphaned":
            report.orphaned += 1
        elif status == "degraded":
            report.degraded += 1
        else:
            report.alive += 1

        report.details.append(
            ValidationItem(
                feature=feature,
                missing_components=missing_components,
                missing_procedures=missing_procedures,
                missing_pages=missing_pages,
                status=status,
            )
        )

    logger.info(
        f"Validated {len(report.details)} feature(s): {report.alive} alive, "
        f"{report.orphaned} orphaned, {report.degraded} degraded"
    )
    return report


def critical_orphans(report: ValidationReport) -> list[ValidationItem]:
    return [
        item for item in report.details
        if item.status == "orphaned" and item.feature.priority == "critical"
    ]


async def deprecate_orphaned(
    db: aiosqlite.Connection,
    report: ValidationReport,
    changed_by: str = DEFAULT_ACTOR,
) -> list[str]:
    """Mark every orphaned feature in ``report`` as deprecated. Returns their keys."""
    repo = get_feature_repository(db)
    deprecated: list[str] = []
    async with repo.transaction():
        for item in report.details:
            if item.status != "orphaned":
                continue
            await repo.set_status(
                item.feature.id,
                "deprecated",
                changed_by=changed_by,
                detail="Auto-deprecated: all primary components missing",
                commit=False,
            )
            deprecated.append(item.feature.feature_key)
    if deprecated:
        logger.warning(f"Deprecated {len(deprecated)} orphaned feature(s)")
    return deprecated
