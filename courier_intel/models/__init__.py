"""Database models for Courier Intelligence"""

from courier_intel.models.shop import Shop
from courier_intel.models.customer import Customer, CustomerStat
from courier_intel.models.order import Order
from courier_intel.models.voucher import Voucher, CourierEvent
