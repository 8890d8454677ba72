#!/usr/bin/env python3
"""
tenants_check.py

Lightweight CLI that reads the configured store and logs every persisted
tenant with its registered feed URLs and current log length. Exits with 0
even when no tenants exist; store failures exit with 1.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

THIS_FILE = Path(__file__).resolve()
PROJECT_DIR = THIS_FILE.parent.parent

if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

from app.core.config import get_settings  # noqa: E402
from app.core.logging import configure_logging, get_logger  # noqa: E402
from services.log_store import StoreError, build_store  # noqa: E402


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List persisted tenants, their feeds and log sizes.")
    parser.add_argument("--tenant", default=None, help="Only report this tenant id.")
    return parser.parse_args(argv)


async def run_check(tenant: Optional[str]) -> int:
    logger = get_logger()
    store = build_store(get_settings())
    try:
        tenants = await store.list_tenants()
        if tenant is not None:
            tenants = [t for t in tenants if t == tenant]
        if not tenants:
            logger.warning("tenants_check_no_tenants", tenant=tenant)
            return 0
        for tenant_id in tenants:
            feeds = await store.list_feeds(tenant_id)
            items = await store.list(tenant_id)
            logger.info("tenants_check_tenant", tenant=tenant_id, feeds=feeds, log_length=len(items))
        logger.info("tenants_check_ok", total=len(tenants))
        return 0
    except StoreError as exc:
        logger.error("tenants_check_failed", error=str(exc))
        return 1
    finally:
        await store.close()


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(service_name="script", level=get_settings().log_level_value)
    return asyncio.run(run_check(args.tenant))


if __name__ == "__main__":
    raise SystemExit(main())
