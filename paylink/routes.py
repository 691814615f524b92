from typing import Optional

from fastapi import APIRouter, Depends, Query

from paylink.auth import verify_token
from paylink.dependencies import get_lifecycle
from paylink.lifecycle import PaymentLifecycle
from paylink.schemas import PaymentLinkCreate, PaymentStatusUpdate

router = APIRouter()

# Processor redirects land here, outside the /api prefix
callback_router = APIRouter()


@router.post("/links", status_code=201)
def create_payment_link(
    request: PaymentLinkCreate,
    auth=Depends(verify_token),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    return lifecycle.create_link(request)


@router.get("")
def list_payments(
    brand_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth=Depends(verify_token),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    return lifecycle.list_payments(brand_id=brand_id, status=status, limit=limit, offset=offset)


@router.get("/{reference_id}")
def get_payment(reference_id: str, lifecycle: PaymentLifecycle = Depends(get_lifecycle)):
    return lifecycle.get_public(reference_id)


@router.patch("/{reference_id}/status")
def update_payment_status(
    reference_id: str,
    request: PaymentStatusUpdate,
    auth=Depends(verify_token),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    return lifecycle.update_status(reference_id, request.status)


@router.post("/{reference_id}/checkout")
def initialize_checkout(reference_id: str, lifecycle: PaymentLifecycle = Depends(get_lifecycle)):
    return lifecycle.initialize_checkout(reference_id)


@callback_router.get("/payment/success/{reference_id}")
def payment_success(
    reference_id: str,
    token: Optional[str] = None,
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    # The customer sees a success outcome even if capture failed; webhooks catch up
    payment = lifecycle.finalize_return(reference_id, token=token)
    return {"outcome": "success", "reference_id": reference_id, "status": payment.status}


@callback_router.get("/payment/cancel/{reference_id}")
def payment_cancel(reference_id: str, lifecycle: PaymentLifecycle = Depends(get_lifecycle)):
    payment = lifecycle.cancel(reference_id)
    return {"outcome": "cancelled", "reference_id": reference_id, "status": payment.status}
