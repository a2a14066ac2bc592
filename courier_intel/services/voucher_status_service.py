"""
Voucher Status Service

Polls couriers for vouchers that have not reached a terminal state and feeds
the normalized result back through IngestionService.ingest_voucher, so
courier updates follow exactly the same upsert + recompute path as webhooks.

Scheduling is external: run scripts/refresh_vouchers.py from cron (or any
scheduler) to trigger a pass.
"""
import asyncio
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from courier_intel.config import get_settings
from courier_intel.connectors.base_courier import CourierRegistry, NormalizedStatus
from courier_intel.models.shop import Shop
from courier_intel.models.voucher import TERMINAL_STATUSES, Voucher
from courier_intel.services.ingestion_service import IngestionService, parse_event_time
from courier_intel.utils.helpers import isoformat, utcnow
from courier_intel.utils.logger import log

# Normalized courier status -> voucher status. Unmapped statuses keep the current one.
STATUS_MAP = {
    "created": "created",
    "shipped": "shipped",
    "in_transit": "in_transit",
    "delivered": "delivered",
    "returned": "returned",
    "failed": "failed",
}


class VoucherStatusService:
    def __init__(self, db: Session, ingestion: IngestionService, couriers: CourierRegistry):
        self.db = db
        self.ingestion = ingestion
        self.couriers = couriers

    def build_payload(self, voucher: Voucher, status: NormalizedStatus) -> Dict[str, Any]:
        """
        Voucher webhook payload for a courier result.

        Existing voucher fields are carried over because ingestion replaces
        every column on upsert.
        """
        now = utcnow()
        new_status = voucher.status
        delivered_at = voucher.delivered_at
        returned_at = voucher.returned_at
        failed_at = voucher.failed_at

        if status.delivered:
            new_status = "delivered"
            delivered_at = (
                parse_event_time(status.delivery_date, status.delivery_time)
                or delivered_at
                or now
            )
        elif status.returned:
            new_status = "returned"
            returned_at = returned_at or now
        elif status.status in STATUS_MAP:
            new_status = STATUS_MAP[status.status]
            if new_status == "failed":
                failed_at = failed_at or now

        shipped_at = voucher.shipped_at
        if shipped_at is None and new_status != "created":
            event_times = [
                t for t in (parse_event_time(e.date, e.time) for e in status.events) if t
            ]
            shipped_at = min(event_times) if event_times else None

        meta = dict(voucher.meta or {})
        meta["courier_status"] = status.status
        meta["courier_status_title"] = status.status_title
        meta["last_polled_at"] = now.isoformat()

        return {
            "voucher_number": voucher.voucher_number,
            "external_order_id": voucher.order.external_order_id if voucher.order else None,
            "customer_hash": voucher.customer_hash,
            "courier_name": voucher.courier_name,
            "courier_service": voucher.courier_service,
            "tracking_url": voucher.tracking_url,
            "status": new_status,
            "shipped_at": isoformat(shipped_at),
            "delivered_at": isoformat(delivered_at),
            "returned_at": isoformat(returned_at),
            "failed_at": isoformat(failed_at),
            "meta": meta,
            "events": [e.to_dict() for e in status.events],
        }

    async def refresh(self, voucher: Voucher) -> Optional[Dict[str, Any]]:
        """Poll one voucher. Returns the ingestion result, or None if no client handles its courier."""
        client = self.couriers.get(voucher.courier_name)
        if client is None:
            log.debug(f"No courier client for '{voucher.courier_name}', skipping {voucher.voucher_number}")
            return None

        status = await client.fetch_status(voucher.voucher_number)
        payload = self.build_payload(voucher, status)
        shop = voucher.shop
        # Blocking DB work runs off the event loop; the session is not used
        # by this coroutine until the thread returns
        return await asyncio.to_thread(self.ingestion.ingest_voucher, shop, payload)

    async def refresh_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Refresh every non-terminal voucher of active shops, oldest update first.

        A failure on one voucher is logged and does not stop the pass.
        """
        limit = limit or get_settings().voucher_refresh_batch_size
        vouchers = (
            self.db.query(Voucher)
            .join(Shop, Shop.id == Voucher.shop_id)
            .filter(Shop.is_active == True, Voucher.status.notin_(TERMINAL_STATUSES))  # noqa: E712
            .order_by(Voucher.updated_at.asc(), Voucher.id.asc())
            .limit(limit)
            .all()
        )

        summary = {"checked": 0, "updated": 0, "skipped": 0, "failed": 0}
        for voucher in vouchers:
            summary["checked"] += 1
            number = voucher.voucher_number
            try:
                result = await self.refresh(voucher)
            except Exception as e:
                summary["failed"] += 1
                log.error(f"Status refresh failed for voucher {number}: {e}")
                continue
            if result is None:
                summary["skipped"] += 1
            else:
                summary["updated"] += 1

        log.info(
            f"Voucher refresh pass: {summary['checked']} checked, {summary['updated']} updated, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
        return summary
