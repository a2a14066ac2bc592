"""
Shipment tracking models

Voucher = one courier consignment. CourierEvent = one tracking checkpoint
reported by the courier for that consignment.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier_intel.models.base import Base
from courier_intel.utils.helpers import isoformat

VOUCHER_STATUSES = ("created", "shipped", "in_transit", "delivered", "returned", "failed")
TERMINAL_STATUSES = ("delivered", "returned", "failed")


class Voucher(Base):
    """
    Courier consignment, optionally linked to an order and a customer.

    Idempotency key: (shop_id, voucher_number).
    """
    __tablename__ = "vouchers"
    __table_args__ = (
        UniqueConstraint('shop_id', 'voucher_number', name='uq_vouchers_shop_voucher_number'),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), index=True, nullable=True)
    customer_id = Column(
        Integer, ForeignKey("customers.id", ondelete="SET NULL"), index=True, nullable=True
    )
    customer_hash = Column(String(64), index=True, nullable=True)  # null until a later update links it

    voucher_number = Column(String, index=True, nullable=False)

    courier_name = Column(String, nullable=True)  # e.g. ACS, ELTA
    courier_service = Column(String, nullable=True)  # e.g. locker, door-to-door
    tracking_url = Column(String, nullable=True)

    status = Column(String, index=True, default='created', nullable=False)

    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    returned_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    meta = Column(JSON, nullable=True)  # raw courier payload etc.

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    shop = relationship("Shop", back_populates="vouchers")
    order = relationship("Order", back_populates="vouchers")
    customer = relationship("Customer", back_populates="vouchers")
    courier_events = relationship(
        "CourierEvent",
        back_populates="voucher",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CourierEvent.event_time",
    )

    def to_dict(self, include_events: bool = False) -> dict:
        data = {
            "id": self.id,
            "shop_id": self.shop_id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "customer_hash": self.customer_hash,
            "voucher_number": self.voucher_number,
            "courier_name": self.courier_name,
            "courier_service": self.courier_service,
            "tracking_url": self.tracking_url,
            "status": self.status,
            "shipped_at": isoformat(self.shipped_at),
            "delivered_at": isoformat(self.delivered_at),
            "returned_at": isoformat(self.returned_at),
            "failed_at": isoformat(self.failed_at),
            "meta": self.meta,
        }
        if include_events:
            data["courier_events"] = [e.to_dict() for e in self.courier_events]
        return data


class CourierEvent(Base):
    """
    Tracking checkpoint.

    Deduplicated on (voucher_id, event_time, event_description) at ingestion.
    """
    __tablename__ = "courier_events"
    __table_args__ = (
        Index('ix_courier_events_voucher_time', 'voucher_id', 'event_time'),
    )

    id = Column(Integer, primary_key=True, index=True)
    voucher_id = Column(Integer, ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False)

    courier_name = Column(String, nullable=True)
    event_code = Column(String, nullable=True)  # e.g. DELIVERED, OUT_FOR_DELIVERY
    event_description = Column(String, nullable=True)
    location = Column(String, nullable=True)  # station / hub
    event_time = Column(DateTime, nullable=True)

    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    voucher = relationship("Voucher", back_populates="courier_events")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "courier_name": self.courier_name,
            "event_code": self.event_code,
            "event_description": self.event_description,
            "location": self.location,
            "event_time": isoformat(self.event_time),
        }
