"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Payload keys that may carry raw PII and must never reach the logs
_PII_KEYS = {
    "customer_email",
    "customer_name",
    "customer_phone",
    "shipping_address_line1",
    "shipping_address_line2",
}

REDACTED = "[redacted]"


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def redact_payload(payload: Any) -> Any:
    """Return a copy of an inbound payload that is safe to log."""
    if not isinstance(payload, dict):
        return payload
    redacted: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in _PII_KEYS and value:
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_payload(value)
        else:
            redacted[key] = value
    return redacted


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
