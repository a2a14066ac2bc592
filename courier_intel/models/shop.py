"""
Shop (tenant) model

A storefront that pushes orders and vouchers through the signed webhook API.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from courier_intel.models.base import Base


class Shop(Base):
    """Storefront credentials. The api_key/api_secret pair is issued once at onboarding."""
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)

    # HMAC credentials (secret is never serialized)
    api_key = Column(String(64), unique=True, index=True, nullable=False)
    api_secret = Column(String(128), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    orders = relationship("Order", back_populates="shop", passive_deletes=True)
    vouchers = relationship("Voucher", back_populates="shop", passive_deletes=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "api_key": self.api_key,
            "is_active": self.is_active,
        }
