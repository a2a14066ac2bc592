"""
Customer Stats Aggregator

Rebuilds a customer's CustomerStat row from scratch out of their stored
orders and vouchers, then scores it. Counters are never incremented in
place: edits, deletes and backfills are all handled by the same full
recompute.

Callers must hold the customer's ingestion fence (see IngestionService) so
two recomputes for the same customer never interleave.
"""
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from courier_intel.config import get_settings
from courier_intel.errors import NotFoundError
from courier_intel.models.customer import Customer, CustomerStat
from courier_intel.models.order import Order
from courier_intel.models.voucher import Voucher
from courier_intel.services.risk_scorer import RiskPolicy, RiskScorer
from courier_intel.utils.logger import log


class StatsAggregator:
    def __init__(
        self,
        db: Session,
        scorer: Optional[RiskScorer] = None,
        late_delivery_threshold_days: Optional[int] = None,
    ):
        self.db = db
        self.scorer = scorer or RiskScorer(RiskPolicy.from_settings())
        if late_delivery_threshold_days is None:
            late_delivery_threshold_days = get_settings().late_delivery_threshold_days
        self.late_threshold = timedelta(days=late_delivery_threshold_days)

    def recompute(self, customer_hash: str) -> CustomerStat:
        """
        Recompute and persist stats for one customer.

        Raises:
            NotFoundError: no Customer row exists for the hash
        """
        # Pending order/voucher writes must be visible to the aggregate queries
        self.db.flush()

        customer = (
            self.db.query(Customer)
            .filter(Customer.customer_hash == customer_hash)
            .first()
        )
        if not customer:
            raise NotFoundError(f"Customer not found for hash: {customer_hash}")

        order_stats = self._order_stats(customer_hash)
        voucher_stats = self._voucher_stats(customer_hash)

        # Phase 1: counters
        stat = (
            self.db.query(CustomerStat)
            .filter(CustomerStat.customer_hash == customer_hash)
            .first()
        )
        if stat is None:
            stat = CustomerStat(customer_hash=customer_hash)
            self.db.add(stat)

        stat.customer_id = customer.id
        stat.total_orders = order_stats["total_orders"]
        stat.first_order_at = order_stats["first_order_at"]
        stat.last_order_at = order_stats["last_order_at"]
        stat.returns = voucher_stats["returns"]
        stat.late_deliveries = voucher_stats["late_deliveries"]
        self.db.flush()

        # Phase 2: score from the counters as written
        assessment = self.scorer.assess(stat)
        stat.delivery_risk_score = assessment.score
        stat.meta = {
            "risk_level": assessment.level,
            "late_delivery_threshold_days": self.late_threshold.days,
            "policy": self.scorer.policy.to_dict(),
        }
        self.db.flush()
        self.db.refresh(stat)

        log.debug(
            f"Recomputed stats for {customer_hash[:12]}: orders={stat.total_orders} "
            f"returns={stat.returns} late={stat.late_deliveries} "
            f"score={stat.delivery_risk_score} ({assessment.level})"
        )
        return stat

    def _order_stats(self, customer_hash: str) -> Dict:
        total, first_at, last_at = (
            self.db.query(
                func.count(Order.id),
                func.min(Order.ordered_at),
                func.max(Order.ordered_at),
            )
            .filter(Order.customer_hash == customer_hash)
            .one()
        )
        return {
            "total_orders": int(total or 0),
            "first_order_at": first_at,
            "last_order_at": last_at,
        }

    def _voucher_stats(self, customer_hash: str) -> Dict:
        returns = (
            self.db.query(func.count(Voucher.id))
            .filter(Voucher.customer_hash == customer_hash, Voucher.status == "returned")
            .scalar()
        )

        # Compared in Python so the rule is identical on every database backend
        delivered = (
            self.db.query(Voucher.shipped_at, Voucher.delivered_at)
            .filter(
                Voucher.customer_hash == customer_hash,
                Voucher.status == "delivered",
                Voucher.shipped_at.isnot(None),
                Voucher.delivered_at.isnot(None),
            )
            .all()
        )
        late = sum(
            1 for shipped_at, delivered_at in delivered
            if delivered_at - shipped_at > self.late_threshold
        )

        return {"returns": int(returns or 0), "late_deliveries": late}
