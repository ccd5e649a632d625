"""Label endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from fastapi_ordersync.dependencies import get_label_service
from fastapi_ordersync.labels import LabelService
from fastapi_ordersync.schemas import LabelRequest, LabelResponse

router = APIRouter()


@router.post("/orders/{order_id}/label", response_model=LabelResponse)
async def purchase_label(
    order_id: str,
    body: LabelRequest | None = None,
    service: LabelService | None = Depends(get_label_service),
) -> LabelResponse:
    """Buy a shipping label for an order, using its stored rate by default."""
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="Label purchasing not configured",
        )
    result = await service.purchase_label(
        order_id, body.rate_id if body is not None else None
    )
    return LabelResponse(
        success=result.success,
        label_url=result.label_url,
        tracking_number=result.tracking_number,
        error=result.error,
        error_code=result.error_code,
        retry_attempt=result.retry_attempt,
    )
