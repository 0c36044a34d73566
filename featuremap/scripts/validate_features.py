#!/usr/bin/env python3
"""Registry gate for CI and pre-commit hooks.

Usage:
  featuremap-validate
  featuremap-validate --files src/components/auth/LoginForm.tsx src/lib/auth.ts
  featuremap-validate --domain Auth --json

With ``--files`` the impact of deleting those files is checked and the exit
code is 1 when a critical feature would be orphaned. Without it the registry
is validated against the code base and the exit code is 1 when a critical
feature is already orphaned. A missing database or uninitialized registry is
skipped with exit code 0, as is a file that is not a SQLite database.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
from pathlib import Path

from featuremap import config
from featuremap.config import ConfigError, load_registry_config
from featuremap.db.connection import open_connection
from featuremap.db.sqlite_migrations import table_exists
from featuremap.services.impact import get_feature_impact
from featuremap.services.validation import critical_orphans, validate_features


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate the feature registry.")
    parser.add_argument("--db", default=str(config.DB_PATH))
    parser.add_argument("--project-root", default=str(config.PROJECT_ROOT))
    parser.add_argument("--config", default=None, help="Project config (YAML)")
    parser.add_argument("--files", nargs="*", default=None, help="Files being deleted or changed")
    parser.add_argument("--domain", default=None)
    parser.add_argument("--json", action="store_true")
    return parser


async def _check_impact(db, files: list[str], as_json: bool) -> int:
    report = await get_feature_impact(db, files)
    if as_json:
        print(json.dumps(report.model_dump(), indent=2))
    else:
        print(f"Files analyzed: {len(report.files_analyzed)}")
        print(f"Orphaned: {len(report.orphaned)}  Degraded: {len(report.degraded)}")
        for item in report.orphaned:
            print(f"  ORPHANED [{item.feature.priority}] {item.feature.feature_key}")
        for item in report.degraded:
            print(f"  degraded {item.feature.feature_key}: {', '.join(item.affected_files)}")
        if report.blocked:
            print("")
            print(report.block_reason)
    return 1 if report.blocked else 0


async def _check_registry(db, project_root: Path, registry_config, domain: str | None, as_json: bool) -> int:
    report = await validate_features(db, project_root, registry_config, domain)
    critical = critical_orphans(report)
    if as_json:
        payload = report.model_dump()
        payload["critical_orphans"] = [item.feature.feature_key for item in critical]
        print(json.dumps(payload, indent=2))
    else:
        print(f"Alive: {report.alive}  Orphaned: {report.orphaned}  Degraded: {report.degraded}")
        for item in report.details:
            if item.status == "alive":
                continue
            print(f"  {item.status.upper()} [{item.feature.priority}] {item.feature.feature_key}")
            for path in item.missing_components:
                print(f"    missing component: {path}")
            for proc in item.missing_procedures:
                print(f"    missing procedure: {proc.router}.{proc.procedure}")
            for route in item.missing_pages:
                print(f"    missing page: {route}")
        if critical:
            print("")
            print(f"FAILED: {len(critical)} critical feature(s) orphaned")
    return 1 if critical else 0


async def run(args: argparse.Namespace) -> int:
    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Feature registry not found at {db_path}; skipping")
        return 0

    try:
        registry_config = load_registry_config(Path(args.config) if args.config else None)
    except ConfigError as exc:
        print(f"Config error: {exc}")
        return 2

    try:
        db = await open_connection(db_path)
    except sqlite3.DatabaseError as exc:
        print(f"Feature registry at {db_path} is not readable ({exc}); skipping")
        return 0
    try:
        try:
            initialized = await table_exists(db, "features")
        except sqlite3.DatabaseError as exc:
            print(f"Feature registry at {db_path} is not readable ({exc}); skipping")
            return 0
        if not initialized:
            print("Feature registry not initialized; skipping")
            return 0
        if args.files is not None:
            return await _check_impact(db, args.files, args.json)
        return await _check_registry(db, Path(args.project_root), registry_config, args.domain, args.json)
    finally:
        await db.close()


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.WARNING)
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
