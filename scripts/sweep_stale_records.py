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

from reportstore.maintenance import sweep_all_tenants
from reportstore.record_store import AnalysisRecordStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Delete abandoned processing records")
    parser.add_argument("--owner", default="", help="sweep a single tenant instead of all of them")
    parser.add_argument("--max-age-minutes", type=float, default=None, help="staleness threshold")
    parser.add_argument("--dry-run", action="store_true", help="count stale records without deleting")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    store = AnalysisRecordStore.from_env()
    if args.owner.strip():
        owner = args.owner.strip()
        if args.dry_run:
            count = len(store.find_stale(owner=owner, max_age_minutes=args.max_age_minutes))
        else:
            count = store.delete_stale(owner=owner, max_age_minutes=args.max_age_minutes)
        result = {"dryRun": args.dry_run, "staleDeleted": count, "tenants": {owner: count}}
    else:
        result = sweep_all_tenants(store=store, max_age_minutes=args.max_age_minutes, dry_run=args.dry_run)
    print(json.dumps(result, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
