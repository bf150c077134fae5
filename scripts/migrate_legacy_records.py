#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reportstore.config import StoreConfig
from reportstore.maintenance import migrate_legacy_records, migration_status
from reportstore.record_store import AnalysisRecordStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Move unscoped analysis records under tenant prefixes")
    parser.add_argument("--default-owner", default="", help="owner stamped on records without one")
    parser.add_argument("--apply", action="store_true", help="perform the moves (default is a dry run)")
    parser.add_argument("--status", action="store_true", help="only report how many records need migration")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    store = AnalysisRecordStore.from_env()
    if args.status:
        print(json.dumps(migration_status(store=store), ensure_ascii=True, sort_keys=True, indent=2))
        return 0

    default_owner = args.default_owner.strip() or StoreConfig.from_env().legacy_owner
    report = migrate_legacy_records(store=store, default_owner=default_owner, dry_run=not args.apply)
    print(json.dumps(report.as_dict(), ensure_ascii=True, sort_keys=True, indent=2))
    return 0 if report.errors == 0 else 2


if __name__ == "__main__":
    raise SystemExit(main())
