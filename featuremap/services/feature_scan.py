"""Fact-driven feature discovery.

Indexed procedures → features, indexed pages → features, annotated or
interactive components → features; then merge by feature_key and register
everything in one transaction.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite

from featuremap import config
from featuremap.config import DomainConfig, RegistryConfig
from featuremap.db.factory import get_fact_repository, get_feature_repository
from featuremap.models import (
    FEATURE_PRIORITIES,
    SCANNER_ACTOR,
    ComponentLink,
    FeatureInput,
    PageFact,
    PageLink,
    ProcedureFact,
    ProcedureLink,
    ScanResult,
)
from featuremap.path_utils import normalize_file_path

logger = logging.getLogger("featuremap.scanner")

DEFAULT_DOMAIN = "system"
SCAN_DETAIL = "Auto-discovered by feature scanner"

# Framework scaffolding, not product features.
_SKIPPED_ROUTES = {"/", "/error", "/not-found"}
_SKIPPED_PAGE_STEMS = {"error", "not-found"}

_DYNAMIC_SEGMENT = re.compile(r"\[+(?:\.\.\.)?(\w+)\]+")
_ANNOTATION = re.compile(r"@feature\s+([\w.-]+)")
_ANNOTATION_TITLE = re.compile(r"@feature-title\s+(.+)")
_ANNOTATION_PRIORITY = re.compile(r"@feature-priority\s+([\w-]+)")
_INTERACTIVE = re.compile(r"onClick|onSubmit|useMutation|api\.\w+\.\w+\.use")
_EXPORTED_COMPONENT = re.compile(r"export\s+(?:default\s+)?(?:function|const)\s+(\w+)")
_COMPONENT_SUFFIXES = {".ts", ".tsx"}


@dataclass
class DiscoveredFeature:
    feature: FeatureInput
    components: list[ComponentLink] = field(default_factory=list)
    procedures: list[ProcedureLink] = field(default_factory=list)
    pages: list[PageLink] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.feature.feature_key

    def add_component(self, component: ComponentLink) -> None:
        natural_key = (component.file, component.name or "")
        if any((c.file, c.name or "") == natural_key for c in self.components):
            return
        self.components.append(component)


# ── Identity helpers ────────────────────────────────────────────────

def to_kebab_case(name: str) -> str:
    """`orderItems` → `order-items`."""
    return re.sub(r"([A-Z])", r"-\1", name or "").lower().lstrip("-")


def kebab_to_title(value: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in re.split(r"[-_.]", value or "") if part)


def page_feature_key(route: str) -> str:
    """`/products/[id]` → `page.products._id_`."""
    body = _DYNAMIC_SEGMENT.sub(r"_\1_", route.strip().strip("/"))
    return "page." + body.replace("/", ".")


def _path_segments(path: str) -> list[str]:
    return [segment for segment in re.split(r"[/\\]+", path) if segment]


def infer_domain(path: str, domains: list[DomainConfig]) -> str:
    """First configured domain whose keywords match the path, else `system`.

    Per domain, router keywords match as substrings, page patterns as route
    prefixes and domain-name words as whole path segments.
    """
    lowered = (path or "").lower()
    segments = _path_segments(lowered)
    for domain in domains:
        name = domain.name.lower()
        for router in domain.routers:
            keyword = router.replace("*", "").lower()
            if keyword and keyword in lowered:
                return name
        for page in domain.pages:
            prefix = page.replace("*", "").rstrip("/").lower()
            if prefix and (lowered == prefix or lowered.startswith(prefix + "/")):
                return name
        for word in re.split(r"[/\s]+", name):
            if len(word) > 2 and word in segments:
                return name
    return DEFAULT_DOMAIN


# ── Source 1: procedures ────────────────────────────────────────────

def discover_procedure_features(
    procedures: list[ProcedureFact], domains: list[DomainConfig]
) -> list[DiscoveredFeature]:
    discovered: dict[str, DiscoveredFeature] = {}
    for proc in procedures:
        subdomain = to_kebab_case(proc.router_name)
        feature_key = f"{subdomain}.{proc.procedure_name}"

        entry = discovered.get(feature_key)
        if entry is None:
            entry = DiscoveredFeature(
                feature=FeatureInput(
                    feature_key=feature_key,
                    domain=infer_domain(proc.router_file, domains),
                    subdomain=subdomain,
                    title=f"{kebab_to_title(subdomain)} - {kebab_to_title(proc.procedure_name)}",
                )
            )
            discovered[feature_key] = entry

        if not any(
            (p.router, p.procedure) == (proc.router_name, proc.procedure_name)
            for p in entry.procedures
        ):
            entry.procedures.append(
                ProcedureLink(router=proc.router_name, procedure=proc.procedure_name, type=proc.procedure_type)
            )
        entry.add_component(ComponentLink(file=proc.router_file, role="data", is_primary=False))
    return list(discovered.values())


# ── Source 2: pages ─────────────────────────────────────────────────

def is_scaffolding_page(page: PageFact) -> bool:
    route = "/" + page.route.strip().strip("/")
    if route in _SKIPPED_ROUTES:
        return True
    return Path(normalize_file_path(page.page_file)).stem in _SKIPPED_PAGE_STEMS


def discover_page_features(
    pages: list[PageFact], domains: list[DomainConfig]
) -> list[DiscoveredFeature]:
    discovered: list[DiscoveredFeature] = []
    for page in pages:
        if is_scaffolding_page(page):
            continue

        feature_key = page_feature_key(page.route)
        parts = feature_key.split(".")[1:]
        subdomain = "-".join(parts[:2]) if parts else "root"

        entry = DiscoveredFeature(
            feature=FeatureInput(
                feature_key=feature_key,
                domain=infer_domain(page.route, domains),
                subdomain=subdomain,
                title=f"Page: {page.route}",
                portal_scope=[page.portal] if page.portal else [],
            ),
            pages=[PageLink(route=page.route, portal=page.portal)],
        )
        entry.add_component(ComponentLink(file=page.page_file, role="ui", is_primary=True))
        for component_file in page.components:
            entry.add_component(ComponentLink(file=component_file, role="ui", is_primary=False))
        discovered.append(entry)
    return discovered


# ── Source 3: component annotations ─────────────────────────────────

def parse_feature_annotations(source: str) -> list[dict[str, str]]:
    """Find `@feature <key>` tags with optional nearby title/priority tags."""
    annotations: list[dict[str, str]] = []
    for match in _ANNOTATION.finditer(source):
        context = source[max(0, match.start() - 200):match.start() + 300]
        annotation = {"feature_key": match.group(1)}
        title = _ANNOTATION_TITLE.search(context)
        if title:
            annotation["title"] = title.group(1).strip()
        priority = _ANNOTATION_PRIORITY.search(context)
        if priority and priority.group(1) in FEATURE_PRIORITIES:
            annotation["priority"] = priority.group(1)
        elif priority:
            logger.warning(f"Ignoring unknown priority {priority.group(1)!r} for {match.group(1)}")
        annotations.append(annotation)
    return annotations


def discover_component_features(
    project_root: Path, registry_config: RegistryConfig
) -> list[DiscoveredFeature]:
    base = project_root / registry_config.components_dir
    if not base.is_dir():
        logger.info(f"Components directory not found: {base}")
        return []

    discovered: list[DiscoveredFeature] = []
    for path in sorted(base.rglob("*")):
        if path.suffix not in _COMPONENT_SUFFIXES or not path.is_file():
            continue
        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(f"Skipping unreadable component {path}: {exc}")
            continue

        relative = path.relative_to(project_root).as_posix()
        domain = infer_domain(relative, registry_config.domains)
        annotations = parse_feature_annotations(source)
        for annotation in annotations:
            key = annotation["feature_key"]
            discovered.append(
                DiscoveredFeature(
                    feature=FeatureInput(
                        feature_key=key,
                        domain=domain,
                        subdomain=key.split(".")[0],
                        title=annotation.get("title") or kebab_to_title(key),
                        priority=annotation.get("priority"),
                    ),
                    components=[ComponentLink(file=relative, role="implementation", is_primary=True)],
                )
            )

        export = _EXPORTED_COMPONENT.search(source)
        if export and _INTERACTIVE.search(source):
            name = export.group(1)
            subdomain = path.parent.name
            key = f"component.{subdomain}.{to_kebab_case(name)}"
            if any(a["feature_key"] == key for a in annotations):
                continue
            discovered.append(
                DiscoveredFeature(
                    feature=FeatureInput(
                        feature_key=key,
                        domain=domain,
                        subdomain=subdomain,
                        title=name,
                    ),
                    components=[ComponentLink(file=relative, name=name, role="implementation", is_primary=True)],
                )
            )
    return discovered


# ── Registration ────────────────────────────────────────────────────

def merge_discovered(*sources: list[DiscoveredFeature]) -> dict[str, DiscoveredFeature]:
    """Later sources win on key collisions."""
    merged: dict[str, DiscoveredFeature] = {}
    for source in sources:
        for entry in source:
            merged[entry.key] = entry
    return merged


async def run_feature_scan(
    db: aiosqlite.Connection,
    registry_config: RegistryConfig | None = None,
    project_root: Path | str | None = None,
    clear: bool = False,
) -> ScanResult:
    registry_config = registry_config or RegistryConfig()
    root = Path(project_root) if project_root is not None else config.PROJECT_ROOT
    repo = get_feature_repository(db)
    facts = get_fact_repository(db)

    procedure_features = discover_procedure_features(await facts.list_procedures(), registry_config.domains)
    page_features = discover_page_features(await facts.list_pages(), registry_config.domains)
    component_features = discover_component_features(root, registry_config)
    merged = merge_discovered(procedure_features, page_features, component_features)

    # Clearing and re-registering land or roll back together.
    async with repo.transaction():
        if clear:
            await repo.clear_auto_discovered(commit=False)
        for entry in merged.values():
            feature_id = await repo.upsert(entry.feature, commit=False)
            for comp in entry.components:
                await repo.link_component(
                    feature_id, comp.file, comp.name, comp.role, comp.is_primary, commit=False
                )
            for proc in entry.procedures:
                await repo.link_procedure(feature_id, proc.router, proc.procedure, proc.type, commit=False)
            for page in entry.pages:
                await repo.link_page(feature_id, page.route, page.portal, commit=False)
            # Re-scans append another "created" row for known keys.
            await repo.log_change(feature_id, "created", SCAN_DETAIL, changed_by=SCANNER_ACTOR, commit=False)

    result = ScanResult(
        totalDiscovered=len(merged),
        fromProcedures=len(procedure_features),
        fromPages=len(page_features),
        fromComponents=len(component_features),
        registered=await repo.count_keys(list(merged)) if merged else 0,
    )
    logger.info(
        f"Feature scan: {result.totalDiscovered} discovered "
        f"({result.fromProcedures} procedures, {result.fromPages} pages, "
        f"{result.fromComponents} components), {result.registered} registered"
    )
    return result
