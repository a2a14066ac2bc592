"""
Shared API dependencies: hashing, webhook authentication, services.
"""
import json
from functools import lru_cache
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from courier_intel.config import get_settings
from courier_intel.errors import ValidationError
from courier_intel.models.base import get_db
from courier_intel.models.shop import Shop
from courier_intel.services.customer_hasher import CustomerHasher
from courier_intel.services.ingestion_service import IngestionService
from courier_intel.services.request_authenticator import (
    HEADER_API_KEY,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    RequestAuthenticator,
)


@lru_cache()
def get_hasher() -> CustomerHasher:
    """Process-wide hasher. Raises ConfigurationError if the salt is unusable."""
    return CustomerHasher(get_settings().customer_hash_salt)


async def require_shop(request: Request, db: Session = Depends(get_db)) -> Shop:
    """Dependency: verify the HMAC headers and attach the shop to request.state."""
    body = await request.body()
    shop = RequestAuthenticator(db).authenticate(
        api_key=request.headers.get(HEADER_API_KEY),
        timestamp=request.headers.get(HEADER_TIMESTAMP),
        signature=request.headers.get(HEADER_SIGNATURE),
        method=request.method,
        path=request.url.path,
        body=body,
    )
    request.state.shop = shop
    request.state.raw_body = body
    return shop


def json_body(request: Request) -> Any:
    """Decode the body already read (and verified) by require_shop."""
    raw = getattr(request.state, "raw_body", b"")
    try:
        return json.loads(raw or b"null")
    except (ValueError, UnicodeDecodeError):
        raise ValidationError(
            "Request body is not valid JSON",
            fields=[{"field": "body", "message": "invalid JSON"}],
        )


def get_ingestion_service(
    db: Session = Depends(get_db),
    hasher: CustomerHasher = Depends(get_hasher),
) -> IngestionService:
    return IngestionService(db, hasher)
