"""
Webhook request authentication

Storefronts sign every request with their shop secret:

    X-API-Key:    shop api key
    X-Timestamp:  unix seconds
    X-Signature:  hex HMAC-SHA256(secret, timestamp + METHOD + path + raw_body)

Security contract:
- Constant-time signature comparison (hmac.compare_digest)
- Timestamps older/newer than the replay window are rejected
- Unknown key, bad timestamp and bad signature produce the same generic 401 message
- The shop secret is never logged
"""
import hashlib
import hmac
import time
from typing import Optional, Union
from urllib.parse import urlsplit

from sqlalchemy.orm import Session

from courier_intel.config import get_settings
from courier_intel.errors import AuthenticationError
from courier_intel.models.shop import Shop
from courier_intel.services import shop_service
from courier_intel.utils.logger import log

HEADER_API_KEY = "X-API-Key"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_SIGNATURE = "X-Signature"

DEFAULT_REPLAY_WINDOW = 300

_INVALID_CREDENTIALS = "Invalid credentials"


def normalize_path(path: str) -> str:
    """Signed path form: no query string, one leading slash, no trailing slash."""
    return "/" + urlsplit(path).path.strip("/")


def _to_bytes(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def build_string_to_sign(timestamp: Union[str, int], method: str, path: str,
                         body: Union[str, bytes, None]) -> bytes:
    return (
        str(timestamp).encode("utf-8")
        + method.upper().encode("utf-8")
        + normalize_path(path).encode("utf-8")
        + _to_bytes(body)
    )


def sign(secret: str, timestamp: Union[str, int], method: str, path: str,
         body: Union[str, bytes, None]) -> str:
    """Producer-side signature. Verifier recomputes exactly this."""
    return hmac.new(
        secret.encode("utf-8"),
        build_string_to_sign(timestamp, method, path, body),
        hashlib.sha256,
    ).hexdigest()


class RequestAuthenticator:
    """Resolves and verifies the shop behind a signed webhook request"""

    def __init__(self, db: Session, replay_window: Optional[int] = None):
        self.db = db
        if replay_window is None:
            replay_window = get_settings().replay_window_seconds
        self.replay_window = replay_window

    def authenticate(
        self,
        api_key: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str],
        method: str,
        path: str,
        body: Union[str, bytes, None],
        now: Optional[float] = None,
    ) -> Shop:
        """
        Verify a request and return its Shop.

        Raises:
            AuthenticationError: on any failure (always rendered as 401)
        """
        if not api_key or not timestamp or not signature:
            raise AuthenticationError("Missing authentication headers")

        shop = shop_service.get_by_api_key(self.db, api_key)
        if not shop or not shop.is_active:
            log.warning(f"Webhook rejected: unknown or inactive api key {api_key[:8]}...")
            raise AuthenticationError(_INVALID_CREDENTIALS)

        # Timestamp failures get the same message as a bad key, details go to the log only
        try:
            ts = int(str(timestamp).strip())
        except (TypeError, ValueError):
            log.warning(f"Webhook rejected for shop {shop.id}: unparseable timestamp {timestamp!r}")
            raise AuthenticationError(_INVALID_CREDENTIALS)

        current = time.time() if now is None else now
        if abs(current - ts) > self.replay_window:
            log.warning(f"Webhook rejected for shop {shop.id}: timestamp {ts} outside replay window")
            raise AuthenticationError(_INVALID_CREDENTIALS)

        expected = sign(shop.api_secret, str(timestamp).strip(), method, path, body)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.strip().lower().encode("utf-8")):
            log.warning(f"Webhook rejected for shop {shop.id}: HMAC signature mismatch")
            raise AuthenticationError(_INVALID_CREDENTIALS)

        return shop
