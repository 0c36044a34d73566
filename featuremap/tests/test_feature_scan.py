import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiosqlite

from featuremap.config import DomainConfig, RegistryConfig
from featuremap.db.repositories.facts import SqliteCodeFactRepository
from featuremap.db.repositories.features import SqliteFeatureRepository
from featuremap.db.sqlite_migrations import run_migrations
from featuremap.models import PageFact, ProcedureFact
from featuremap.services.feature_scan import (
    discover_page_features,
    discover_procedure_features,
    infer_domain,
    is_scaffolding_page,
    kebab_to_title,
    page_feature_key,
    parse_feature_annotations,
    run_feature_scan,
    to_kebab_case,
)

DOMAINS = [
    DomainConfig(name="Auth", routers=["auth", "user"]),
    DomainConfig(name="Shop", pages=["/products"]),
]

LOGIN_FORM_SOURCE = """import { useState } from "react";

/**
 * @feature auth.login-form
 * @feature-title Login Form
 * @feature-priority critical
 */
export function LoginForm() {
  return <form onSubmit={submit} />;
}
"""


class FeatureIdentityTests(unittest.TestCase):
    def test_kebab_and_title_case(self) -> None:
        self.assertEqual(to_kebab_case("orderItems"), "order-items")
        self.assertEqual(to_kebab_case("auth"), "auth")
        self.assertEqual(kebab_to_title("order-items"), "Order Items")

    def test_page_keys_replace_dynamic_segments(self) -> None:
        self.assertEqual(page_feature_key("/products/[id]"), "page.products._id_")
        self.assertEqual(page_feature_key("/docs/[...slug]"), "page.docs._slug_")
        self.assertEqual(page_feature_key("/shop/[[...path]]"), "page.shop._path_")
        self.assertEqual(page_feature_key("/settings/profile"), "page.settings.profile")

    def test_domain_inference(self) -> None:
        self.assertEqual(infer_domain("src/server/routers/auth.ts", DOMAINS), "auth")
        self.assertEqual(infer_domain("/products/[id]", DOMAINS), "shop")
        self.assertEqual(infer_domain("src/server/routers/orderItems.ts", DOMAINS), "system")
        self.assertEqual(infer_domain("src/server/routers/auth.ts", []), "system")

    def test_scaffolding_pages_are_skipped(self) -> None:
        self.assertTrue(is_scaffolding_page(PageFact(page_file="src/app/page.tsx", route="/")))
        self.assertTrue(is_scaffolding_page(PageFact(page_file="src/app/error.tsx", route="/oops")))
        self.assertTrue(is_scaffolding_page(PageFact(page_file="src/app/x/page.tsx", route="/not-found")))
        self.assertFalse(is_scaffolding_page(PageFact(page_file="src/app/orders/page.tsx", route="/orders")))

    def test_annotations(self) -> None:
        annotations = parse_feature_annotations(LOGIN_FORM_SOURCE)

        self.assertEqual(
            annotations,
            [{"feature_key": "auth.login-form", "title": "Login Form", "priority": "critical"}],
        )

    def test_unknown_annotation_priority_is_ignored(self) -> None:
        with self.assertLogs("featuremap.scanner", level="WARNING"):
            annotations = parse_feature_annotations("// @feature a.b\n// @feature-priority urgent\n")

        self.assertEqual(annotations, [{"feature_key": "a.b"}])


class DiscoveryTests(unittest.TestCase):
    def test_each_procedure_is_its_own_feature(self) -> None:
        procedures = [
            ProcedureFact(router_name="orderItems", procedure_name="list", router_file="src/server/routers/orderItems.ts"),
            ProcedureFact(
                router_name="orderItems",
                procedure_name="create",
                procedure_type="mutation",
                router_file="src/server/routers/orderItems.ts",
            ),
        ]

        discovered = discover_procedure_features(procedures, DOMAINS)

        self.assertEqual([d.key for d in discovered], ["order-items.list", "order-items.create"])
        self.assertEqual(discovered[0].feature.subdomain, "order-items")
        self.assertEqual(discovered[0].feature.title, "Order Items - List")
        self.assertEqual(discovered[0].feature.domain, "system")
        self.assertEqual(discovered[1].procedures[0].type, "mutation")
        self.assertEqual([(c.role, c.is_primary) for c in discovered[0].components], [("data", False)])

    def test_page_components_are_deduplicated(self) -> None:
        pages = [
            PageFact(page_file="src/app/page.tsx", route="/"),
            PageFact(
                page_file="src/app/products/[id]/page.tsx",
                route="/products/[id]",
                portal="shop",
                components=["src/components/products/Gallery.tsx", "src/components/products/Gallery.tsx"],
            ),
        ]

        discovered = discover_page_features(pages, DOMAINS)

        self.assertEqual(len(discovered), 1)
        entry = discovered[0]
        self.assertEqual(entry.key, "page.products._id_")
        self.assertEqual(entry.feature.title, "Page: /products/[id]")
        self.assertEqual(entry.feature.domain, "shop")
        self.assertEqual(entry.feature.portal_scope, ["shop"])
        self.assertEqual(
            [(c.file, c.is_primary) for c in entry.components],
            [("src/app/products/[id]/page.tsx", True), ("src/components/products/Gallery.tsx", False)],
        )


class RunFeatureScanTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        component = self.root / "src" / "components" / "auth" / "LoginForm.tsx"
        component.parent.mkdir(parents=True)
        component.write_text(LOGIN_FORM_SOURCE, encoding="utf-8")

        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteFeatureRepository(self.db)
        facts = SqliteCodeFactRepository(self.db)
        await facts.replace_procedures(
            [
                ProcedureFact(
                    router_name="auth",
                    procedure_name="getUser",
                    procedure_type="query",
                    router_file="src/server/routers/auth.ts",
                ),
                ProcedureFact(router_name="orderItems", procedure_name="list", router_file="src/server/routers/orderItems.ts"),
            ]
        )
        await facts.replace_pages(
            [
                PageFact(page_file="src/app/page.tsx", route="/"),
                PageFact(page_file="src/app/products/[id]/page.tsx", route="/products/[id]", portal="shop"),
            ]
        )
        self.config = RegistryConfig(domains=DOMAINS)

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    async def _scalar(self, sql: str) -> int:
        async with self.db.execute(sql) as cur:
            row = await cur.fetchone()
        return int(row[0])

    async def _scan(self, clear: bool = False):
        return await run_feature_scan(self.db, self.config, self.root, clear=clear)

    async def test_scan_registers_all_sources(self) -> None:
        result = await self._scan()

        self.assertEqual(result.fromProcedures, 2)
        self.assertEqual(result.fromPages, 1)
        self.assertEqual(result.fromComponents, 2)
        self.assertEqual(result.totalDiscovered, 5)
        self.assertEqual(result.registered, 5)

        detail = await self.repo.get_detail("auth.getUser")
        self.assertEqual(detail.domain, "auth")
        self.assertEqual([(c.component_file, c.role) for c in detail.components], [("src/server/routers/auth.ts", "data")])
        self.assertEqual([(p.router_name, p.procedure_name) for p in detail.procedures], [("auth", "getUser")])
        self.assertEqual([c.changed_by for c in detail.changelog], ["scanner"])

        annotated = await self.repo.get_by_key("auth.login-form")
        self.assertEqual(annotated.priority, "critical")
        self.assertEqual(annotated.title, "Login Form")
        self.assertIsNotNone(await self.repo.get_by_key("component.auth.login-form"))
        self.assertIsNotNone(await self.repo.get_by_key("page.products._id_"))

    async def test_rescan_is_idempotent_apart_from_changelog(self) -> None:
        await self._scan()
        features = await self._scalar("SELECT COUNT(*) FROM features")
        components = await self._scalar("SELECT COUNT(*) FROM feature_components")

        await self._scan()

        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM features"), features)
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM feature_components"), components)
        feature = await self.repo.get_by_key("auth.getUser")
        self.assertEqual(len(await self.repo.get_changelog(feature.id)), 2)

    async def test_rescan_keeps_human_status_and_clear_keeps_touched_features(self) -> None:
        await self._scan()
        feature = await self.repo.get_by_key("order-items.list")
        await self.repo.set_status(feature.id, "deprecated", changed_by="alice")

        await self._scan(clear=True)

        kept = await self.repo.get_by_key("order-items.list")
        self.assertEqual(kept.id, feature.id)
        self.assertEqual(kept.status, "deprecated")
        rescanned = await self.repo.get_by_key("auth.getUser")
        self.assertEqual(len(await self.repo.get_changelog(rescanned.id)), 1)

    async def test_missing_components_directory_is_not_an_error(self) -> None:
        config = RegistryConfig(domains=DOMAINS, components_dir="does/not/exist")

        result = await run_feature_scan(self.db, config, self.root)

        self.assertEqual(result.fromComponents, 0)
        self.assertEqual(result.totalDiscovered, 3)

    async def test_failed_discovery_leaves_registry_untouched_when_clearing(self) -> None:
        await self._scan()
        before = await self.repo.get_by_key("auth.getUser")

        with patch(
            "featuremap.services.feature_scan.discover_component_features",
            side_effect=OSError("disk went away"),
        ):
            with self.assertRaises(OSError):
                await self._scan(clear=True)

        after = await self.repo.get_by_key("auth.getUser")
        self.assertIsNotNone(after)
        self.assertEqual(after.id, before.id)
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM features"), 5)

    async def test_failed_registration_rolls_back_clear_and_partial_writes(self) -> None:
        await self._scan()
        before = await self.repo.get_by_key("auth.getUser")
        changelog_rows = await self._scalar("SELECT COUNT(*) FROM feature_changelog")

        with patch.object(
            SqliteFeatureRepository, "link_page", AsyncMock(side_effect=sqlite3.IntegrityError("constraint failed"))
        ):
            with self.assertRaises(sqlite3.IntegrityError):
                await self._scan(clear=True)

        after = await self.repo.get_by_key("auth.getUser")
        self.assertEqual(after.id, before.id)
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM features"), 5)
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM feature_changelog"), changelog_rows)

    async def test_failed_first_scan_registers_nothing(self) -> None:
        with patch.object(
            SqliteFeatureRepository, "link_page", AsyncMock(side_effect=sqlite3.IntegrityError("constraint failed"))
        ):
            with self.assertRaises(sqlite3.IntegrityError):
                await self._scan()

        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM features"), 0)
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM feature_components"), 0)

    async def test_empty_fact_tables_give_zero_result(self) -> None:
        facts = SqliteCodeFactRepository(self.db)
        await facts.replace_procedures([])
        await facts.replace_pages([])
        config = RegistryConfig(domains=DOMAINS, components_dir="does/not/exist")

        result = await run_feature_scan(self.db, config, self.root)

        self.assertEqual(
            (result.totalDiscovered, result.fromProcedures, result.fromPages, result.fromComponents, result.registered),
            (0, 0, 0, 0, 0),
        )
        self.assertEqual(await self._scalar("SELECT COUNT(*) FROM features"), 0)


if __name__ == "__main__":
    unittest.main()
