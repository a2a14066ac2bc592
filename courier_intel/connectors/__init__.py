"""Courier tracking client interface"""

from courier_intel.connectors.base_courier import (
    BaseCourierClient,
    CourierRegistry,
    NormalizedStatus,
    TrackingEvent,
)
