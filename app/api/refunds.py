"""Refund request API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas import (
    RefundCreate,
    RefundOut,
    RefundProcess,
    RefundShipmentsQuery,
    RefundTrackingUpdate,
    ShipmentOut,
)
from app.services.auth import get_current_user, require_admin
from app.services.refunds import (
    RefundError,
    RefundForbidden,
    RefundNotFound,
    RefundService,
    parse_shipment_ids,
)

router = APIRouter(prefix="/refunds", tags=["refunds"])

_service = RefundService()


def get_refund_service() -> RefundService:
    return _service


def _is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


@router.post("/", response_model=RefundOut, status_code=201)
async def create_refund(
    body: RefundCreate,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    user: dict = Depends(get_current_user),
):
    try:
        shipment_ids = parse_shipment_ids(body.shipment_ids)
        return await svc.create_request(
            db, user["uid"], shipment_ids, body.reason, body.requested_amount,
        )
    except RefundError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=list[RefundOut])
async def list_refunds(
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    user: dict = Depends(get_current_user),
):
    return await svc.list_requests(db, user["uid"], _is_admin(user), status)


@router.post("/shipments", response_model=list[ShipmentOut])
async def refund_shipments(
    body: RefundShipmentsQuery,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    user: dict = Depends(get_current_user),
):
    """Shipments shown on a refund request (admin: any, user: own)."""
    return await svc.shipments_for_refund(db, body.shipment_ids, user["uid"], _is_admin(user))


@router.get("/{refund_id}", response_model=RefundOut)
async def get_refund(
    refund_id: int,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    user: dict = Depends(get_current_user),
):
    try:
        return await svc.get_request(db, refund_id, user["uid"], _is_admin(user))
    except RefundNotFound:
        raise HTTPException(status_code=404, detail="Refund request not found")
    except RefundForbidden:
        raise HTTPException(status_code=403, detail="Access denied")


@router.patch("/admin/{refund_id}", response_model=RefundOut)
async def process_refund(
    refund_id: int,
    body: RefundProcess,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    admin: dict = Depends(require_admin),
):
    try:
        return await svc.process_request(
            db, refund_id, body.status, admin["uid"], body.processed_amount, body.admin_notes,
        )
    except RefundNotFound:
        raise HTTPException(status_code=404, detail="Refund request not found")
    except RefundError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.put("/{refund_id}/tracking", response_model=RefundOut)
async def update_refund_tracking(
    refund_id: int,
    body: RefundTrackingUpdate,
    db: AsyncSession = Depends(get_db),
    svc: RefundService = Depends(get_refund_service),
    _admin: dict = Depends(require_admin),
):
    try:
        return await svc.update_tracking(db, refund_id, **body.model_dump())
    except RefundNotFound:
        raise HTTPException(status_code=404, detail="Refund request not found")
    except RefundError as e:
        raise HTTPException(status_code=400, detail=str(e))
