"""Pydantic models for the feature registry and its reports."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

SCANNER_ACTOR = "scanner"
DEFAULT_ACTOR = "user"

FEATURE_STATUSES = ("planned", "active", "deprecated", "removed")
FEATURE_PRIORITIES = ("critical", "standard", "nice-to-have")
COMPONENT_ROLES = ("implementation", "ui", "data", "utility")
DEPENDENCY_TYPES = ("requires", "enhances", "replaces")
CHANGE_TYPES = ("created", "updated", "deprecated", "removed", "restored")


# ── Registry entities ───────────────────────────────────────────────

class Feature(BaseModel):
    id: int
    feature_key: str
    domain: str
    subdomain: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: str = "active"  # planned | active | deprecated | removed
    priority: str = "standard"  # critical | standard | nice-to-have
    portal_scope: list[str] = Field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    removed_at: Optional[str] = None
    removed_reason: Optional[str] = None


class FeatureInput(BaseModel):
    """Upsert payload. Fields left as None keep their stored value on update."""
    feature_key: str
    domain: Optional[str] = None
    subdomain: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    portal_scope: Optional[list[str]] = None


class FeatureComponent(BaseModel):
    id: int
    feature_id: int
    component_file: str
    component_name: Optional[str] = None
    role: str = "implementation"  # implementation | ui | data | utility
    is_primary: bool = False


class FeatureProcedure(BaseModel):
    id: int
    feature_id: int
    router_name: str
    procedure_name: str
    procedure_type: Optional[str] = None


class FeaturePage(BaseModel):
    id: int
    feature_id: int
    page_route: str
    portal: Optional[str] = None


class FeatureDep(BaseModel):
    id: int
    feature_id: int
    depends_on_feature_id: int
    dependency_type: str = "requires"  # requires | enhances | replaces


class FeatureChangeLog(BaseModel):
    id: int
    feature_id: int
    change_type: str  # created | updated | deprecated | removed | restored
    changed_by: Optional[str] = None
    change_detail: Optional[str] = None
    commit_hash: Optional[str] = None
    created_at: str = ""


class FeatureWithCounts(Feature):
    component_count: int = 0
    procedure_count: int = 0
    page_count: int = 0


class FeatureDetail(Feature):
    components: list[FeatureComponent] = Field(default_factory=list)
    procedures: list[FeatureProcedure] = Field(default_factory=list)
    pages: list[FeaturePage] = Field(default_factory=list)
    dependencies: list[FeatureDep] = Field(default_factory=list)
    changelog: list[FeatureChangeLog] = Field(default_factory=list)


# ── Registration payloads ───────────────────────────────────────────

class ComponentLink(BaseModel):
    file: str
    name: Optional[str] = None
    role: str = "implementation"
    is_primary: bool = False


class ProcedureLink(BaseModel):
    router: str
    procedure: str
    type: Optional[str] = None


class PageLink(BaseModel):
    route: str
    portal: Optional[str] = None


class DependencyLink(BaseModel):
    feature_key: str
    dependency_type: str = "requires"


class FeatureRegistration(FeatureInput):
    components: list[ComponentLink] = Field(default_factory=list)
    procedures: list[ProcedureLink] = Field(default_factory=list)
    pages: list[PageLink] = Field(default_factory=list)
    dependencies: list[DependencyLink] = Field(default_factory=list)
    commit_hash: Optional[str] = None


# ── Upstream code facts ─────────────────────────────────────────────

class ProcedureFact(BaseModel):
    router_name: str
    procedure_name: str
    procedure_type: str = "query"
    router_file: str


class PageFact(BaseModel):
    page_file: str
    route: str
    portal: str = "unknown"
    components: list[str] = Field(default_factory=list)
    routers: list[str] = Field(default_factory=list)


# ── Reports ─────────────────────────────────────────────────────────

class ImpactItem(BaseModel):
    feature: Feature
    affected_files: list[str] = Field(default_factory=list)
    remaining_files: list[str] = Field(default_factory=list)
    status: str = "unaffected"  # orphaned | degraded | unaffected


class ImpactReport(BaseModel):
    files_analyzed: list[str] = Field(default_factory=list)
    orphaned: list[ImpactItem] = Field(default_factory=list)
    degraded: list[ImpactItem] = Field(default_factory=list)
    unaffected: list[ImpactItem] = Field(default_factory=list)
    blocked: bool = False
    block_reason: Optional[str] = None


class MissingProcedure(BaseModel):
    router: str
    procedure: str


class ValidationItem(BaseModel):
    feature: Feature
    missing_components: list[str] = Field(default_factory=list)
    missing_procedures: list[MissingProcedure] = Field(default_factory=list)
    missing_pages: list[str] = Field(default_factory=list)
    status: str = "alive"  # alive | orphaned | degraded


class ValidationReport(BaseModel):
    alive: int = 0
    orphaned: int = 0
    degraded: int = 0
    details: list[ValidationItem] = Field(default_factory=list)


class ParityItem(BaseModel):
    feature_key: str
    title: str
    status: str  # DONE | GAP | NEW
    old_files: list[str] = Field(default_factory=list)
    new_files: list[str] = Field(default_factory=list)


class ParityReport(BaseModel):
    done: list[ParityItem] = Field(default_factory=list)
    gaps: list[ParityItem] = Field(default_factory=list)
    new_features: list[ParityItem] = Field(default_factory=list)
    parity_percentage: float = 100.0


class ScanResult(BaseModel):
    totalDiscovered: int = 0
    fromProcedures: int = 0
    fromPages: int = 0
    fromComponents: int = 0
    registered: int = 0
