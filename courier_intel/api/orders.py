"""
Order webhook API
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from courier_intel.api.deps import get_ingestion_service, json_body, require_shop
from courier_intel.models.shop import Shop
from courier_intel.services.ingestion_service import IngestionService

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", status_code=201)
def create_order(
    request: Request,
    shop: Shop = Depends(require_shop),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Create or replace an order (idempotent on external_order_id)."""
    result = service.ingest_order(shop, json_body(request))
    return JSONResponse(status_code=201, content={"success": True, **result})


@router.get("/{order_id}")
def get_order(
    order_id: int,
    shop: Shop = Depends(require_shop),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Order details, scoped to the calling shop."""
    order = service.get_order(shop, order_id)
    data = order.to_dict(include_vouchers=True)
    data["customer"] = order.customer.to_dict() if order.customer else None
    data["shop"] = order.shop.to_dict()
    return data
