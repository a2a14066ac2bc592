"""
One voucher status refresh pass. Polls the configured courier clients
(COURIER_CLIENTS) for every non-terminal voucher and ingests the results.
Meant to be run from cron or any external scheduler.

Usage: python scripts/refresh_vouchers.py [--limit 100]
"""
import asyncio
import argparse
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from courier_intel.api.deps import get_hasher
from courier_intel.connectors.base_courier import CourierRegistry
from courier_intel.models.base import SessionLocal
from courier_intel.services.ingestion_service import IngestionService
from courier_intel.services.voucher_status_service import VoucherStatusService


async def refresh(limit: int):
    registry = CourierRegistry.from_settings()
    if not registry.names():
        print("No courier clients configured (COURIER_CLIENTS), nothing to poll")
        return

    db = SessionLocal()
    try:
        service = VoucherStatusService(db, IngestionService(db, get_hasher()), registry)
        summary = await service.refresh_pending(limit=limit)
    finally:
        db.close()

    print(f"Checked {summary['checked']}, updated {summary['updated']}, "
          f"skipped {summary['skipped']}, failed {summary['failed']}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    asyncio.run(refresh(args.limit))
