"""
Inbound webhook payloads

Pydantic models for the order and voucher webhooks. Validation failures are
converted into a single ValidationError listing every failing field.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from courier_intel.errors import ValidationError
from courier_intel.services.customer_hasher import is_valid_digest
from courier_intel.utils.helpers import to_naive_utc

VoucherStatus = Literal["created", "shipped", "in_transit", "delivered", "returned", "failed"]

T = TypeVar("T", bound=BaseModel)


def _parse_datetime(value: Any) -> Any:
    """Accept ISO 8601, 'YYYY-MM-DD HH:MM:SS' and bare dates; blank means unset."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value  # let pydantic report it
    return value


def _check_digest(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not is_valid_digest(value):
        raise ValueError("must be a 64-character hex SHA-256 digest")
    return value.lower()


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, coerce_numbers_to_str=True)


class OrderPayload(_Payload):
    """Order webhook body"""

    external_order_id: str = Field(min_length=1)

    # Identity: raw email (hashed here) or a digest computed by the plugin
    customer_email: Optional[str] = None
    customer_hash: Optional[str] = None

    # Raw PII - hashed on arrival, never stored
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address_line1: Optional[str] = None
    shipping_address_line2: Optional[str] = None

    # Pre-hashed PII
    customer_name_hash: Optional[str] = None
    customer_phone_hash: Optional[str] = None
    shipping_address_line1_hash: Optional[str] = None
    shipping_address_line2_hash: Optional[str] = None

    shipping_city: Optional[str] = None
    shipping_postcode: Optional[str] = None
    shipping_country: Optional[str] = None

    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    status: Optional[str] = None
    payment_method: Optional[str] = None
    payment_method_title: Optional[str] = None
    shipping_method: Optional[str] = None
    items_count: Optional[int] = Field(default=None, ge=0)

    ordered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    meta: Optional[Dict[str, Any]] = None

    @field_validator("customer_email")
    @classmethod
    def _check_email(cls, v):
        if v and "@" not in v:
            raise ValueError("must be a valid email address")
        return v or None

    @field_validator(
        "customer_hash",
        "customer_name_hash",
        "customer_phone_hash",
        "shipping_address_line1_hash",
        "shipping_address_line2_hash",
    )
    @classmethod
    def _check_hashes(cls, v):
        return _check_digest(v)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v):
        return v.upper() if v else v

    @field_validator("ordered_at", "completed_at", mode="before")
    @classmethod
    def _parse_dates(cls, v):
        return _parse_datetime(v)

    @field_validator("ordered_at", "completed_at")
    @classmethod
    def _naive_utc(cls, v):
        return to_naive_utc(v)

    @model_validator(mode="after")
    def _require_identity(self):
        if not self.customer_email and not self.customer_hash:
            raise ValueError("either customer_email or customer_hash is required")
        return self


class CourierEventPayload(_Payload):
    """One tracking checkpoint as normalized by the courier clients"""
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True, coerce_numbers_to_str=True)

    date: Optional[str] = None  # YYYYMMDD or YYYY-MM-DD
    time: Optional[str] = None  # HHMM or HH:MM
    station: Optional[str] = None
    status_title: Optional[str] = None
    remarks: Optional[str] = None
    code: Optional[str] = None


class VoucherPayload(_Payload):
    """Voucher webhook body"""

    voucher_number: str = Field(min_length=1)
    external_order_id: Optional[str] = None
    customer_hash: Optional[str] = None
    customer_email: Optional[str] = None

    courier_name: Optional[str] = None
    courier_service: Optional[str] = None
    tracking_url: Optional[str] = None

    status: Optional[VoucherStatus] = None

    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    meta: Optional[Dict[str, Any]] = None
    events: Optional[List[CourierEventPayload]] = None

    @field_validator("external_order_id")
    @classmethod
    def _blank_order_id(cls, v):
        return v or None

    @field_validator("customer_hash")
    @classmethod
    def _check_hash(cls, v):
        return _check_digest(v)

    @field_validator("customer_email")
    @classmethod
    def _check_email(cls, v):
        if v and "@" not in v:
            raise ValueError("must be a valid email address")
        return v or None

    @field_validator("tracking_url")
    @classmethod
    def _check_url(cls, v):
        if not v:
            return None
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("must be an http(s) URL")
        return v

    @field_validator("shipped_at", "delivered_at", "returned_at", "failed_at", mode="before")
    @classmethod
    def _parse_dates(cls, v):
        return _parse_datetime(v)

    @field_validator("shipped_at", "delivered_at", "returned_at", "failed_at")
    @classmethod
    def _naive_utc(cls, v):
        return to_naive_utc(v)


def parse_payload(model: Type[T], payload: Any) -> T:
    """
    Validate a decoded JSON body.

    Raises:
        ValidationError: with one entry per failing field
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            "Request body must be a JSON object",
            fields=[{"field": "body", "message": "expected a JSON object"}],
        )
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        fields = []
        for err in e.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
            fields.append({"field": loc, "message": err.get("msg", "invalid value")})
        names = ", ".join(f["field"] for f in fields)
        raise ValidationError(f"Invalid payload: {names}", fields=fields)
