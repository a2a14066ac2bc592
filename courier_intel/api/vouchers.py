"""
Voucher webhook API
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from courier_intel.api.deps import get_ingestion_service, json_body, require_shop
from courier_intel.models.shop import Shop
from courier_intel.services.ingestion_service import IngestionService

router = APIRouter(prefix="/api/vouchers", tags=["vouchers"])


@router.post("", status_code=201)
def create_voucher(
    request: Request,
    shop: Shop = Depends(require_shop),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Create or replace a voucher (idempotent on voucher_number)."""
    result = service.ingest_voucher(shop, json_body(request))
    return JSONResponse(status_code=201, content={"success": True, **result})


@router.get("/{voucher_id}")
def get_voucher(
    voucher_id: int,
    shop: Shop = Depends(require_shop),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Voucher details with courier events, scoped to the calling shop."""
    voucher = service.get_voucher(shop, voucher_id)
    data = voucher.to_dict(include_events=True)
    data["customer"] = voucher.customer.to_dict() if voucher.customer else None
    data["order"] = voucher.order.to_dict() if voucher.order else None
    data["shop"] = voucher.shop.to_dict()
    return data


@router.delete("/{voucher_number}")
def delete_voucher(
    voucher_number: str,
    shop: Shop = Depends(require_shop),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Delete a voucher by its number and refresh the linked customer's stats."""
    service.delete_voucher(shop, voucher_number)
    return {
        "success": True,
        "message": "Voucher deleted successfully",
        "voucher_number": voucher_number,
    }
