"""
Order model

One purchase at one shop, as submitted by the storefront. PII arrives (or is
stored) only as salted digests; city/postcode/country are kept in clear.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier_intel.models.base import Base
from courier_intel.utils.helpers import isoformat


class Order(Base):
    """
    Storefront order.

    Idempotency key: (shop_id, external_order_id). Re-submitting the same
    order replaces every column.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint('shop_id', 'external_order_id', name='uq_orders_shop_external_id'),
        Index('ix_orders_shop_customer_hash', 'shop_id', 'customer_hash'),
    )

    id = Column(Integer, primary_key=True, index=True)
    shop_id = Column(Integer, ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(
        Integer, ForeignKey("customers.id", ondelete="SET NULL"), index=True, nullable=True
    )
    customer_hash = Column(String(64), index=True, nullable=False)  # denormalized for fast filtering

    external_order_id = Column(String, index=True, nullable=False)  # storefront's own id

    # Hashed PII
    customer_name_hash = Column(String(64), nullable=True)
    customer_phone_hash = Column(String(64), nullable=True)
    shipping_address_line1_hash = Column(String(64), nullable=True)
    shipping_address_line2_hash = Column(String(64), nullable=True)

    # Non-PII shipping location
    shipping_city = Column(String, nullable=True)
    shipping_postcode = Column(String, nullable=True)
    shipping_country = Column(String, nullable=True)

    total_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), default='EUR')

    status = Column(String, index=True, default='pending')  # storefront status, e.g. processing
    payment_method = Column(String, nullable=True)  # cod, card, ...
    payment_method_title = Column(String, nullable=True)
    shipping_method = Column(String, nullable=True)
    items_count = Column(Integer, nullable=True)

    ordered_at = Column(DateTime, index=True, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    meta = Column(JSON, nullable=True)  # line items, plugin info

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    shop = relationship("Shop", back_populates="orders")
    customer = relationship("Customer", back_populates="orders")
    vouchers = relationship("Voucher", back_populates="order", passive_deletes=True)

    def to_dict(self, include_vouchers: bool = False) -> dict:
        data = {
            "id": self.id,
            "shop_id": self.shop_id,
            "customer_id": self.customer_id,
            "customer_hash": self.customer_hash,
            "external_order_id": self.external_order_id,
            "customer_name_hash": self.customer_name_hash,
            "customer_phone_hash": self.customer_phone_hash,
            "shipping_address_line1_hash": self.shipping_address_line1_hash,
            "shipping_address_line2_hash": self.shipping_address_line2_hash,
            "shipping_city": self.shipping_city,
            "shipping_postcode": self.shipping_postcode,
            "shipping_country": self.shipping_country,
            "total_amount": float(self.total_amount) if self.total_amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_method_title": self.payment_method_title,
            "shipping_method": self.shipping_method,
            "items_count": self.items_count,
            "ordered_at": isoformat(self.ordered_at),
            "completed_at": isoformat(self.completed_at),
            "meta": self.meta,
        }
        if include_vouchers:
            data["vouchers"] = [v.to_dict() for v in self.vouchers]
        return data
