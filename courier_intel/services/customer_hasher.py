"""
Customer pseudonymization

Hashes customer PII into salted SHA-256 digests so the same person matches
across shops without any raw personal data being stored.

The salt must be identical on every producer (storefront plugins) and on
this server. A different salt silently produces different hashes for the
same customer, so a missing or placeholder salt is a fatal configuration
error raised at construction time, before anything is hashed.
"""
import hashlib
import re
from typing import Any, Dict, Optional

from courier_intel.errors import ConfigurationError, ValidationError

FIELD_EMAIL = "email"
FIELD_PHONE = "phone"
FIELD_NAME = "name"
FIELD_ADDRESS = "address"

MIN_SALT_LENGTH = 16
DIGEST_LENGTH = 64

# Values shipped in sample .env files and plugin docs
PLACEHOLDER_SALTS = {
    "changeme",
    "change-me",
    "change_me",
    "your-salt-here",
    "your_salt_here",
    "customer_hash_salt",
    "secret",
    "salt",
    "default",
    "placeholder",
    "xxxxxxxxxxxxxxxx",
}

_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_WHITESPACE_RE = re.compile(r"\s+")
_PHONE_STRIP_RE = re.compile(r"[\s\-()]")

# Raw order payload key -> (digest key, field kind)
ORDER_PII_FIELDS = {
    "customer_name": ("customer_name_hash", FIELD_NAME),
    "customer_phone": ("customer_phone_hash", FIELD_PHONE),
    "shipping_address_line1": ("shipping_address_line1_hash", FIELD_ADDRESS),
    "shipping_address_line2": ("shipping_address_line2_hash", FIELD_ADDRESS),
}


def is_valid_digest(value: Any) -> bool:
    """True for a 64-character hex string (SHA-256 hexdigest)."""
    return isinstance(value, str) and bool(_DIGEST_RE.match(value))


def validate_salt(salt: Optional[str]) -> str:
    """Return the salt, or raise ConfigurationError if it is unusable."""
    if not salt or not salt.strip():
        raise ConfigurationError(
            "CUSTOMER_HASH_SALT is not configured; refusing to hash customer data"
        )
    if salt.strip().lower() in PLACEHOLDER_SALTS:
        raise ConfigurationError(
            "CUSTOMER_HASH_SALT is set to a placeholder value; configure the shared deployment salt"
        )
    if len(salt) < MIN_SALT_LENGTH:
        raise ConfigurationError(
            f"CUSTOMER_HASH_SALT must be at least {MIN_SALT_LENGTH} characters"
        )
    return salt


def normalize(field_kind: str, raw_value: str) -> str:
    """Canonical form of a PII value before hashing."""
    if field_kind == FIELD_EMAIL:
        return raw_value.strip().lower()
    if field_kind == FIELD_PHONE:
        return _PHONE_STRIP_RE.sub("", raw_value.strip())
    if field_kind in (FIELD_NAME, FIELD_ADDRESS):
        return _WHITESPACE_RE.sub(" ", raw_value).strip().lower()
    raise ValueError(f"Unknown PII field kind: {field_kind}")


class CustomerHasher:
    """Salted, normalized hashing of customer PII"""

    def __init__(self, salt: Optional[str]):
        self._salt = validate_salt(salt)

    def hash(self, field_kind: str, raw_value: Optional[str]) -> Optional[str]:
        """
        Hash one PII value.

        Returns None when the value is empty (or empty once normalized).
        """
        if raw_value is None:
            return None
        normalized = normalize(field_kind, str(raw_value))
        if not normalized:
            return None
        return hashlib.sha256((normalized + self._salt).encode("utf-8")).hexdigest()

    def hash_email(self, email: Optional[str]) -> str:
        """Canonical customer identity. An empty email is a validation error."""
        digest = self.hash(FIELD_EMAIL, email)
        if digest is None:
            raise ValidationError(
                "customer_email is required",
                fields=[{"field": "customer_email", "message": "must not be empty"}],
            )
        return digest

    def hash_phone(self, phone: Optional[str]) -> Optional[str]:
        return self.hash(FIELD_PHONE, phone)

    def hash_name(self, name: Optional[str]) -> Optional[str]:
        return self.hash(FIELD_NAME, name)

    def hash_address(self, address: Optional[str]) -> Optional[str]:
        return self.hash(FIELD_ADDRESS, address)

    def hash_order_pii(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace raw PII in an order payload with digests.

        ``customer_email`` becomes ``customer_hash``; name/phone/address lines
        become their ``*_hash`` counterparts. Raw keys are removed. Digests
        already present in the payload are kept when no raw value is given.
        """
        hashed = dict(payload)

        email = hashed.pop("customer_email", None)
        if email:
            hashed["customer_hash"] = self.hash_email(email)

        for raw_key, (hash_key, kind) in ORDER_PII_FIELDS.items():
            digest = self.hash(kind, hashed.pop(raw_key, None))
            if digest:
                hashed[hash_key] = digest

        return hashed
