"""Manual feature registration and lifecycle transitions."""
from __future__ import annotations

import logging

import aiosqlite

from featuremap.db.factory import get_feature_repository
from featuremap.models import (
    DEFAULT_ACTOR,
    Feature,
    FeatureDetail,
    FeatureInput,
    FeatureRegistration,
)

logger = logging.getLogger("featuremap.registry")


async def register_feature(
    db: aiosqlite.Connection,
    registration: FeatureRegistration,
    changed_by: str = DEFAULT_ACTOR,
) -> FeatureDetail | None:
    """Upsert a feature with its links and log who did it, atomically."""
    repo = get_feature_repository(db)
    existing = await repo.get_by_key(registration.feature_key)
    feature_input = FeatureInput(
        **registration.model_dump(include=set(FeatureInput.model_fields))
    )

    async with repo.transaction():
        feature_id = await repo.upsert(feature_input, commit=False)
        for comp in registration.components:
            await repo.link_component(
                feature_id, comp.file, comp.name, comp.role, comp.is_primary, commit=False
            )
        for proc in registration.procedures:
            await repo.link_procedure(feature_id, proc.router, proc.procedure, proc.type, commit=False)
        for page in registration.pages:
            await repo.link_page(feature_id, page.route, page.portal, commit=False)
        for dep in registration.dependencies:
            target = await repo.get_by_key(dep.feature_key)
            if target is None:
                logger.warning(
                    f"Skipping dependency {registration.feature_key} -> {dep.feature_key}: not registered"
                )
                continue
            await repo.link_dependency(feature_id, target.id, dep.dependency_type, commit=False)

        await repo.log_change(
            feature_id,
            "updated" if existing else "created",
            f"Registered {len(registration.components)} component(s), "
            f"{len(registration.procedures)} procedure(s), {len(registration.pages)} page(s)",
            commit_hash=registration.commit_hash,
            changed_by=changed_by,
            commit=False,
        )

    return await repo.get_detail(feature_id)


async def _transition(
    db: aiosqlite.Connection,
    feature_key: str,
    status: str,
    changed_by: str,
    detail: str | None,
) -> Feature | None:
    repo = get_feature_repository(db)
    feature = await repo.get_by_key(feature_key)
    if feature is None:
        return None
    await repo.set_status(feature.id, status, changed_by=changed_by, detail=detail)
    logger.info(f"{feature_key}: {feature.status} → {status} by {changed_by}")
    return await repo.get_by_id(feature.id)


async def deprecate_feature(
    db: aiosqlite.Connection, feature_key: str, changed_by: str = DEFAULT_ACTOR, reason: str | None = None
) -> Feature | None:
    return await _transition(db, feature_key, "deprecated", changed_by, reason)


async def remove_feature(
    db: aiosqlite.Connection, feature_key: str, reason: str, changed_by: str = DEFAULT_ACTOR
) -> Feature | None:
    """Logical delete: the row stays, with status `removed` and the reason."""
    return await _transition(db, feature_key, "removed", changed_by, reason)


async def restore_feature(
    db: aiosqlite.Connection, feature_key: str, changed_by: str = DEFAULT_ACTOR
) -> Feature | None:
    return await _transition(db, feature_key, "active", changed_by, "Restored")
