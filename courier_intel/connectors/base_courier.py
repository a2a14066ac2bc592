"""
Base courier client

Every courier (REST, SOAP with session tokens, SOAP with auth keys, ...)
is wrapped in a client exposing the same capability:

    get_voucher_status(voucher_number) -> NormalizedStatus

The ingestion core only ever sees the normalized shape. Protocol-specific
clients live outside this package and are registered by dotted path
(see CourierRegistry.from_settings).
"""
import importlib
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from courier_intel.config import get_settings
from courier_intel.utils.logger import log
from courier_intel.utils.retry import retry_async


@dataclass
class TrackingEvent:
    """One checkpoint, as courier clients report it"""
    date: Optional[str] = None  # YYYYMMDD or YYYY-MM-DD
    time: Optional[str] = None  # HHMM or HH:MM
    station: Optional[str] = None
    status_title: Optional[str] = None
    remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class NormalizedStatus:
    """
    Courier-independent tracking result.

    status is one of: created, shipped, in_transit, delivered, returned,
    failed, issue, unknown.
    """
    status: str
    status_title: str = ""
    delivered: bool = False
    returned: bool = False
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedStatus":
        return cls(
            status=data.get("status") or "unknown",
            status_title=data.get("status_title") or "",
            delivered=bool(data.get("delivered")),
            returned=bool(data.get("returned")),
            delivery_date=data.get("delivery_date"),
            delivery_time=data.get("delivery_time"),
            events=[
                TrackingEvent(
                    date=e.get("date"),
                    time=e.get("time"),
                    station=e.get("station"),
                    status_title=e.get("status_title"),
                    remarks=e.get("remarks"),
                )
                for e in data.get("events") or []
            ],
        )


class BaseCourierClient(ABC):
    """Base class for all courier tracking clients"""

    # Retry configuration (can be overridden by subclasses)
    RETRY_MAX_ATTEMPTS: Optional[int] = None
    RETRY_BASE_DELAY: Optional[float] = None

    def __init__(self, name: str):
        self.name = name
        self.lookup_count = 0
        self.error_count = 0

    @abstractmethod
    async def get_voucher_status(self, voucher_number: str) -> NormalizedStatus:
        """Look up one voucher at the courier"""
        pass

    async def fetch_status(self, voucher_number: str) -> NormalizedStatus:
        """get_voucher_status with retry on transient network errors"""
        settings = get_settings()
        attempts = self.RETRY_MAX_ATTEMPTS or settings.courier_max_attempts
        base_delay = self.RETRY_BASE_DELAY if self.RETRY_BASE_DELAY is not None else settings.courier_retry_base_delay

        lookup = retry_async(max_attempts=attempts, base_delay=base_delay)(self.get_voucher_status)
        try:
            status = await lookup(voucher_number)
        except Exception:
            self.error_count += 1
            raise
        self.lookup_count += 1
        return status


class CourierRegistry:
    """Courier name -> client. Names are matched case-insensitively."""

    def __init__(self):
        self._clients: Dict[str, BaseCourierClient] = {}

    def register(self, courier_name: str, client: BaseCourierClient) -> None:
        self._clients[courier_name.strip().lower()] = client

    def get(self, courier_name: Optional[str]) -> Optional[BaseCourierClient]:
        if not courier_name:
            return None
        return self._clients.get(courier_name.strip().lower())

    def names(self) -> List[str]:
        return sorted(self._clients)

    @classmethod
    def from_settings(cls, settings=None) -> "CourierRegistry":
        """
        Build from COURIER_CLIENTS, a comma-separated list of
        ``name=package.module:ClassName`` entries. Each class is
        instantiated with no arguments.
        """
        settings = settings or get_settings()
        registry = cls()
        for entry in filter(None, (e.strip() for e in (settings.courier_clients or "").split(","))):
            name, _, target = entry.partition("=")
            module_path, _, class_name = target.partition(":")
            if not name or not module_path or not class_name:
                raise ValueError(f"Invalid COURIER_CLIENTS entry: {entry!r}")
            client_cls = getattr(importlib.import_module(module_path), class_name)
            registry.register(name, client_cls())
            log.info(f"Registered courier client {name} -> {target}")
        return registry
