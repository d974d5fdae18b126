from __future__ import annotations

import argparse
import asyncio

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.persistence.db import SessionLocal
from tenantplane.services.idempotency import IdempotencyLedger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Purge terminal idempotency ledger rows")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override IDEMPOTENCY_RETENTION_DAYS for this run",
    )
    return parser


async def prune(retention_days: int) -> int:
    # Processing rows are never purged; they show up in /v1/ops/ledger/stuck instead.
    settings = get_settings()
    ledger = IdempotencyLedger(SessionLocal, processing_lease_s=settings.idempotency_processing_lease_s)
    deleted = await ledger.purge(retention_days=retention_days)
    print(f"pruned_idempotency_records={deleted}")
    return deleted


def main() -> None:
    configure_logging()
    args = _build_parser().parse_args()
    retention_days = args.retention_days or get_settings().idempotency_retention_days
    asyncio.run(prune(retention_days))


if __name__ == "__main__":
    main()
