"""Feature parity between an old and a new file layout."""
from __future__ import annotations

import logging
from typing import Iterable

import aiosqlite

from featuremap.db.factory import get_feature_repository
from featuremap.models import ParityItem, ParityReport
from featuremap.path_utils import unique_paths

logger = logging.getLogger("featuremap.parity")


def parity_percentage(done: int, gaps: int) -> float:
    total = done + gaps
    if total <= 0:
        return 100.0
    return min(100.0, max(0.0, done / total * 100))


async def check_parity(
    db: aiosqlite.Connection,
    old_files: Iterable[str],
    new_files: Iterable[str],
) -> ParityReport:
    """Score a migration feature by feature.

    A feature touching the old layout is DONE when it also has a component in
    the new layout and a GAP otherwise. Features seen only in the new layout
    are NEW and do not count toward the percentage.
    """
    repo = get_feature_repository(db)
    old_list = unique_paths(old_files)
    new_list = unique_paths(new_files)
    old_set, new_set = set(old_list), set(new_list)

    old_ids = await repo.feature_ids_for_files(old_list) if old_list else set()
    new_ids = await repo.feature_ids_for_files(new_list) if new_list else set()

    report = ParityReport()
    for feature_id in old_ids | new_ids:
        feature = await repo.get_by_id(feature_id)
        if feature is None:
            continue
        linked = unique_paths(c.component_file for c in await repo.get_components(feature_id))

        if feature_id in old_ids:
            status = "DONE" if feature_id in new_ids else "GAP"
        else:
            status = "NEW"
        item = ParityItem(
            feature_key=feature.feature_key,
            title=feature.title,
            status=status,
            old_files=[path for path in linked if path in old_set],
            new_files=[path for path in linked if path in new_set],
        )
        if status == "DONE":
            report.done.append(item)
        elif status == "GAP":
            report.gaps.append(item)
        else:
            report.new_features.append(item)

    report.done.sort(key=lambda item: item.feature_key)
    report.gaps.sort(key=lambda item: item.feature_key)
    report.new_features.sort(key=lambda item: item.feature_key)
    report.parity_percentage = parity_percentage(len(report.done), len(report.gaps))
    logger.info(
        f"Parity {report.parity_percentage:.1f}%: {len(report.done)} done, "
        f"{len(report.gaps)} gaps, {len(report.new_features)} new"
    )
    return report
