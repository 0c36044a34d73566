"""Change-impact classification for registered features.

Given the files a change touches or deletes, every active feature is sorted
into orphaned / degraded / unaffected. A critical orphan blocks the change.
"""
from __future__ import annotations

import logging
from typing import Iterable

import aiosqlite

from featuremap.db.factory import get_feature_repository
from featuremap.models import FeatureComponent, ImpactItem, ImpactReport
from featuremap.path_utils import unique_paths

logger = logging.getLogger("featuremap.impact")


def classify_components(
    components: list[FeatureComponent], affected: set[str]
) -> tuple[str, list[str], list[str]]:
    """Return (status, affected_files, remaining_files) for one feature.

    Orphaned needs at least one primary component with every primary file
    affected. Features without a primary can only degrade.
    """
    linked = unique_paths(c.component_file for c in components)
    primary = unique_paths(c.component_file for c in components if c.is_primary)
    hit = [path for path in linked if path in affected]
    remaining = [path for path in linked if path not in affected]

    if primary and all(path in affected for path in primary):
        return "orphaned", hit, remaining
    if hit:
        return "degraded", hit, remaining
    return "unaffected", hit, remaining


def _block_reason(orphaned: list[ImpactItem]) -> str | None:
    critical = [item.feature.feature_key for item in orphaned if item.feature.priority == "critical"]
    if not critical:
        return None
    return (
        f"BLOCKED: {len(critical)} critical feature(s) would be orphaned "
        f"({', '.join(critical)}). Create a migration plan first."
    )


async def get_feature_impact(db: aiosqlite.Connection, file_paths: Iterable[str]) -> ImpactReport:
    repo = get_feature_repository(db)
    files = unique_paths(file_paths)
    affected = set(files)

    features = await repo.list_active()
    components = await repo.components_for_active()

    report = ImpactReport(files_analyzed=files)
    for feature in features:
        status, hit, remaining = classify_components(components.get(feature.id, []), affected)
        item = ImpactItem(
            feature=feature,
            affected_files=hit,
            remaining_files=remaining,
            status=status,
        )
        if status == "orphaned":
            report.orphaned.append(item)
        elif status == "degraded":
            report.degraded.append(item)
        else:
            report.unaffected.append(item)

    report.block_reason = _block_reason(report.orphaned)
    report.blocked = report.block_reason is not None
    logger.info(
        f"Impact of {len(files)} file(s): {len(report.orphaned)} orphaned, "
        f"{len(report.degraded)} degraded, blocked={report.blocked}"
    )
    return report
