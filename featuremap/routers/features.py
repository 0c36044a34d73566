"""Features API router."""
from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from featuremap import config
from featuremap.config import ConfigError, load_registry_config
from featuremap.db import connection
from featuremap.db.factory import get_feature_repository
from featuremap.models import (
    DEFAULT_ACTOR,
    FEATURE_STATUSES,
    Feature,
    FeatureDetail,
    FeatureRegistration,
    FeatureWithCounts,
    ImpactReport,
    ParityReport,
    ScanResult,
    ValidationReport,
)
from featuremap.services.feature_scan import run_feature_scan
from featuremap.services.impact import get_feature_impact
from featuremap.services.parity import check_parity
from featuremap.services.registration import (
    deprecate_feature,
    register_feature,
    remove_feature,
    restore_feature,
)
from featuremap.services.validation import deprecate_orphaned, validate_features

features_router = APIRouter(prefix="/api/features", tags=["features"])
logger = logging.getLogger("featuremap.features")


# ── Request models ──────────────────────────────────────────────────

class ImpactRequest(BaseModel):
    files: list[str] = Field(default_factory=list)


class ParityRequest(BaseModel):
    old_files: list[str] = Field(default_factory=list)
    new_files: list[str] = Field(default_factory=list)


class ScanRequest(BaseModel):
    clear: Optional[bool] = None


class LifecycleRequest(BaseModel):
    reason: Optional[str] = None


# ── Helpers ─────────────────────────────────────────────────────────

def _resolve_actor(value: str | None) -> str:
    actor = (value or "").strip()
    return actor or DEFAULT_ACTOR


def _load_project_config():
    try:
        return load_registry_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


def _not_found(feature_key: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Feature '{feature_key}' not found")


# ── Registry ────────────────────────────────────────────────────────

@features_router.get("", response_model=list[FeatureWithCounts])
async def search_features(
    q: str = "",
    domain: Optional[str] = None,
    subdomain: Optional[str] = None,
    status: Optional[str] = None,
    portal: Optional[str] = None,
    page: Optional[str] = None,
    limit: int = config.SEARCH_LIMIT,
):
    """Full-text search with optional filters; an empty query lists by key."""
    if status and status not in FEATURE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    db = await connection.get_connection()
    repo = get_feature_repository(db)
    return await repo.search(
        q,
        domain=domain,
        subdomain=subdomain,
        status=status,
        portal=portal,
        page_route=page,
        limit=max(1, limit),
    )


@features_router.post("", response_model=FeatureDetail)
async def register(
    req: FeatureRegistration,
    x_featuremap_actor: Optional[str] = Header(default=None),
):
    db = await connection.get_connection()
    try:
        detail = await register_feature(db, req, changed_by=_resolve_actor(x_featuremap_actor))
    except sqlite3.IntegrityError as exc:
        logger.warning(f"Rejected registration of {req.feature_key}: {exc}")
        raise HTTPException(status_code=400, detail=f"Invalid feature registration: {exc}")
    if detail is None:
        raise _not_found(req.feature_key)
    return detail


# ── Analysis ────────────────────────────────────────────────────────

@features_router.post("/impact", response_model=ImpactReport)
async def impact(req: ImpactRequest):
    db = await connection.get_connection()
    return await get_feature_impact(db, req.files)


@features_router.get("/validate", response_model=ValidationReport)
async def validate(
    domain: Optional[str] = None,
    fix: bool = False,
    x_featuremap_actor: Optional[str] = Header(default=None),
):
    """Validate active features; with ``fix`` orphaned ones are deprecated."""
    db = await connection.get_connection()
    report = await validate_features(
        db,
        project_root=config.PROJECT_ROOT,
        registry_config=_load_project_config(),
        domain=domain,
    )
    if fix and report.orphaned:
        await deprecate_orphaned(db, report, changed_by=_resolve_actor(x_featuremap_actor))
    return report


@features_router.post("/parity", response_model=ParityReport)
async def parity(req: ParityRequest):
    db = await connection.get_connection()
    return await check_parity(db, req.old_files, req.new_files)


@features_router.post("/scan", response_model=ScanResult)
async def scan(req: ScanRequest | None = None):
    clear = config.SCAN_CLEAR_BEFORE
    if req is not None and req.clear is not None:
        clear = req.clear
    db = await connection.get_connection()
    return await run_feature_scan(
        db,
        registry_config=_load_project_config(),
        project_root=config.PROJECT_ROOT,
        clear=clear,
    )


# ── Single feature ──────────────────────────────────────────────────

@features_router.get("/{feature_key}", response_model=FeatureDetail)
async def get_feature(feature_key: str):
    """Feature with its components, procedures, pages, dependencies and changelog."""
    db = await connection.get_connection()
    detail = await get_feature_repository(db).get_detail(feature_key)
    if detail is None:
        raise _not_found(feature_key)
    return detail


@features_router.post("/{feature_key}/deprecate", response_model=Feature)
async def deprecate(
    feature_key: str,
    req: LifecycleRequest | None = None,
    x_featuremap_actor: Optional[str] = Header(default=None),
):
    db = await connection.get_connection()
    feature = await deprecate_feature(
        db, feature_key, changed_by=_resolve_actor(x_featuremap_actor), reason=req.reason if req else None
    )
    if feature is None:
        raise _not_found(feature_key)
    return feature


@features_router.post("/{feature_key}/remove", response_model=Feature)
async def remove(
    feature_key: str,
    req: LifecycleRequest,
    x_featuremap_actor: Optional[str] = Header(default=None),
):
    if not (req.reason or "").strip():
        raise HTTPException(status_code=400, detail="A removal reason is required")
    db = await connection.get_connection()
    feature = await remove_feature(
        db, feature_key, req.reason.strip(), changed_by=_resolve_actor(x_featuremap_actor)
    )
    if feature is None:
        raise _not_found(feature_key)
    return feature


@features_router.post("/{feature_key}/restore", response_model=Feature)
async def restore(
    feature_key: str,
    x_featuremap_actor: Optional[str] = Header(default=None),
):
    db = await connection.get_connection()
    feature = await restore_feature(db, feature_key, changed_by=_resolve_actor(x_featuremap_actor))
    if feature is None:
        raise _not_found(feature_key)
    return feature
