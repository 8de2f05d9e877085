"""
Re-run text extraction and auto-linking for one tenant.

Usage:
  python scripts/reindex_tenant.py --tenant acme [--only-empty] [--force] [--types POL,FRM]

Runs as an admin identity outside any request; the hourly reindex allowance
applies per process, so it does not count against API callers.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import script_session  # noqa: E402


def main() -> int:
    from app.compliance.config import load_config
    from app.compliance.extraction import extract_text
    from app.compliance.modules.reindex.service import reindex_tenant
    from app.compliance.ratelimit import SlidingWindowRateLimiter
    from app.compliance.rbac import ADMIN, CallerIdentity
    from app.compliance.storage import storage_from_config

    ap = argparse.ArgumentParser(description="Reindex a tenant's documents (extraction + auto-linking).")
    ap.add_argument("--tenant", required=True, help="Tenant id")
    ap.add_argument("--user", default="reindex-script", help="Actor user id recorded in the audit trail")
    ap.add_argument("--only-empty", action="store_true", help="Skip documents that already have extracted text")
    ap.add_argument("--force", action="store_true", help="Reprocess even when text is present")
    ap.add_argument("--types", default="", help="Comma-separated document type codes")
    ap.add_argument("--batch-size", type=int, default=None)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = load_config()
    db_url = (os.environ.get("DATABASE_URL") or config["DATABASE_URL"]).strip()

    caller = CallerIdentity(tenant_id=args.tenant, role=ADMIN, user_id=args.user)
    limiter = SlidingWindowRateLimiter(int(config["REINDEX_MAX_PER_HOUR"]), 3600)
    with script_session(db_url) as s:
        summary = reindex_tenant(
            s,
            caller,
            limiter=limiter,
            storage=storage_from_config(config),
            extractor=extract_text,
            only_empty=args.only_empty,
            force=args.force,
            document_types=args.types,
            batch_size=args.batch_size or int(config["REINDEX_BATCH_SIZE"]),
        )
    print(json.dumps(summary, indent=2, default=str))
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
