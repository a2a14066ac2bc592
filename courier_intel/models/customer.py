"""
Customer identity and aggregate statistics

Customers are pseudonymous: the only identifier is the salted email digest,
which is also the join key across shops. No raw PII lives in these tables.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier_intel.models.base import Base
from courier_intel.utils.helpers import isoformat


class Customer(Base):
    """Cross-shop customer identity"""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    customer_hash = Column(String(64), unique=True, index=True, nullable=False)

    first_seen_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)

    meta = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    orders = relationship("Order", back_populates="customer", passive_deletes=True)
    vouchers = relationship("Voucher", back_populates="customer", passive_deletes=True)
    stats = relationship(
        "CustomerStat", back_populates="customer", uselist=False, passive_deletes=True
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_hash": self.customer_hash,
            "first_seen_at": isoformat(self.first_seen_at),
            "last_seen_at": isoformat(self.last_seen_at),
        }


class CustomerStat(Base):
    """
    Delivery outcome aggregates for one customer.

    Always rebuilt from the customer's orders and vouchers, never incremented.
    """
    __tablename__ = "customer_stats"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(
        Integer, ForeignKey("customers.id", ondelete="CASCADE"), index=True, nullable=False
    )
    customer_hash = Column(String(64), unique=True, index=True, nullable=False)

    total_orders = Column(Integer, default=0, nullable=False)
    returns = Column(Integer, default=0, nullable=False)
    late_deliveries = Column(Integer, default=0, nullable=False)

    first_order_at = Column(DateTime, nullable=True)
    last_order_at = Column(DateTime, nullable=True)

    # 0-100, higher is riskier
    delivery_risk_score = Column(Integer, default=0, nullable=False)

    meta = Column(JSON, nullable=True)  # risk_level + policy used for the score

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="stats")

    @property
    def risk_level(self):
        return (self.meta or {}).get("risk_level")

    def to_dict(self) -> dict:
        return {
            "customer_hash": self.customer_hash,
            "total_orders": self.total_orders,
            "returns": self.returns,
            "late_deliveries": self.late_deliveries,
            "first_order_at": isoformat(self.first_order_at),
            "last_order_at": isoformat(self.last_order_at),
            "delivery_risk_score": self.delivery_risk_score,
            "risk_level": self.risk_level,
        }
