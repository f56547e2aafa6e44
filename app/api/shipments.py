"""Shipment API."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import Shipment
from app.schemas import ShipmentCreate, ShipmentOut
from app.services.auth import get_current_user

router = APIRouter(prefix="/shipments", tags=["shipments"])


def _is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


@router.post("/", response_model=ShipmentOut, status_code=201)
async def create_shipment(
    data: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    values = data.model_dump()
    values["receiver_country_code"] = values["receiver_country_code"].upper()
    if values["sender_country_code"]:
        values["sender_country_code"] = values["sender_country_code"].upper()

    shipment = Shipment(user_id=user["uid"], status="pending", **values)
    db.add(shipment)
    await db.commit()
    await db.refresh(shipment)
    return shipment


@router.get("/", response_model=list[ShipmentOut])
async def list_shipments(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    status: str | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    stmt = select(Shipment)
    if not _is_admin(user):
        stmt = stmt.where(Shipment.user_id == user["uid"])
    if status:
        stmt = stmt.where(Shipment.status == status)
    stmt = stmt.order_by(Shipment.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/{shipment_id}", response_model=ShipmentOut)
async def get_shipment(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    shipment = await db.get(Shipment, shipment_id)
    if not shipment or (shipment.user_id != user["uid"] and not _is_admin(user)):
        raise HTTPException(404, "Shipment not found")
    return shipment
