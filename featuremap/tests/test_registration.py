import unittest

import aiosqlite

from featuremap.db.sqlite_migrations import run_migrations
from featuremap.models import (
    ComponentLink,
    DependencyLink,
    FeatureRegistration,
    PageLink,
    ProcedureLink,
)
from featuremap.services.registration import (
    deprecate_feature,
    register_feature,
    remove_feature,
    restore_feature,
)


class RegisterFeatureTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _login(self, **overrides) -> FeatureRegistration:
        data = {
            "feature_key": "auth.login",
            "domain": "auth",
            "title": "Login",
            "priority": "critical",
            "components": [ComponentLink(file="src/components/auth/LoginForm.tsx", role="ui", is_primary=True)],
            "procedures": [ProcedureLink(router="auth", procedure="login", type="mutation")],
            "pages": [PageLink(route="/login", portal="customer")],
            "dependencies": [DependencyLink(feature_key="auth.session")],
            "commit_hash": "abc123",
        }
        data.update(overrides)
        return FeatureRegistration(**data)

    async def test_register_creates_links_and_skips_unknown_dependency(self) -> None:
        with self.assertLogs("featuremap.registry", level="WARNING"):
            detail = await register_feature(self.db, self._login(), changed_by="alice")

        self.assertEqual(detail.feature_key, "auth.login")
        self.assertEqual(detail.priority, "critical")
        self.assertEqual(len(detail.components), 1)
        self.assertEqual(len(detail.procedures), 1)
        self.assertEqual(detail.pages[0].portal, "customer")
        self.assertEqual(detail.dependencies, [])
        self.assertEqual(
            [(c.change_type, c.changed_by, c.commit_hash) for c in detail.changelog],
            [("created", "alice", "abc123")],
        )

    async def test_re_register_updates_and_links_dependency(self) -> None:
        first = await register_feature(self.db, self._login(dependencies=[]))
        session = await register_feature(self.db, FeatureRegistration(feature_key="auth.session", domain="auth"))

        second = await register_feature(self.db, self._login(title="Sign in", commit_hash=None))

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.title, "Sign in")
        self.assertEqual(len(second.components), 1)
        self.assertEqual([d.depends_on_feature_id for d in second.dependencies], [session.id])
        self.assertEqual([c.change_type for c in second.changelog], ["updated", "created"])


class LifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        await register_feature(self.db, FeatureRegistration(feature_key="orders.export", title="Export"))

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_remove_then_restore(self) -> None:
        removed = await remove_feature(self.db, "orders.export", "Replaced by reports", changed_by="alice")
        self.assertEqual(removed.status, "removed")
        self.assertEqual(removed.removed_reason, "Replaced by reports")

        restored = await restore_feature(self.db, "orders.export")
        self.assertEqual(restored.status, "active")
        self.assertIsNone(restored.removed_at)

    async def test_deprecate(self) -> None:
        feature = await deprecate_feature(self.db, "orders.export", reason="Superseded")
        self.assertEqual(feature.status, "deprecated")

    async def test_unknown_key_returns_none(self) -> None:
        self.assertIsNone(await deprecate_feature(self.db, "missing.key"))
        self.assertIsNone(await remove_feature(self.db, "missing.key", "gone"))
        self.assertIsNone(await restore_feature(self.db, "missing.key"))


if __name__ == "__main__":
    unittest.main()
