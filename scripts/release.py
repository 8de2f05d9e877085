#!/usr/bin/env python3
"""
Release step for the evidence registry: apply Alembic migrations to
DATABASE_URL, then compare the live tables with the ORM metadata.

A schema drift is logged, not fatal; the app still refuses SQLite in
production at startup.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

logger = logging.getLogger("release")


def missing_tables(db_url: str) -> list[str]:
    """ORM tables that do not exist in the database after migrating."""
    from sqlalchemy import inspect

    from app.compliance.db import build_engine
    from app.compliance.models import Base

    engine = build_engine(db_url)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    return sorted(name for name in Base.metadata.tables if name not in present)


def run_release() -> None:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required for the release step.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to migrate a sqlite database in production.")

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    logger.info("Migrating evidence registry schema (ENV=%s)", env or "unset")
    command.upgrade(cfg, "head")

    missing = missing_tables(db_url)
    if missing:
        logger.warning("Schema check: tables missing after upgrade: %s", ", ".join(missing))
    else:
        logger.info("Schema check: ok")


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_release()


if __name__ == "__main__":
    main()
