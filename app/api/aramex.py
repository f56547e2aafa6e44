"""Aramex rate quote and label purchase API."""

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import Shipment
from app.schemas import PurchaseLabelsRequest, RateOut, RateRequest
from app.services.aramex import (
    AramexClient,
    AramexError,
    Dimensions,
    RateAddress,
    ShipmentPayload,
)
from app.services.auth import get_current_user, require_admin
from app.services.notification import notification_service

router = APIRouter(prefix="/aramex", tags=["aramex"])

_client = AramexClient()


def get_aramex_client() -> AramexClient:
    return _client


@router.post("/rates", response_model=list[RateOut])
async def quote_rates(
    body: RateRequest,
    client: AramexClient = Depends(get_aramex_client),
    _user: dict = Depends(get_current_user),
):
    try:
        rates = await client.calculate_rates(
            origin=RateAddress(**body.origin.model_dump()),
            destination=RateAddress(**body.destination.model_dump()),
            weight_kg=body.weight_kg,
            number_of_pieces=body.number_of_pieces,
            dimensions=Dimensions(**body.dimensions.model_dump()),
        )
    except AramexError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [r.to_dict() for r in rates]


@router.post("/purchase-labels")
async def purchase_labels(
    body: PurchaseLabelsRequest,
    db: AsyncSession = Depends(get_db),
    client: AramexClient = Depends(get_aramex_client),
    _admin: dict = Depends(require_admin),
):
    """Buy Aramex labels for the given shipments and store the results."""
    shipment_ids = list(dict.fromkeys(body.shipment_ids))
    result = await db.execute(
        select(Shipment).where(Shipment.id.in_(shipment_ids)).order_by(Shipment.id)
    )
    shipments = {s.id: s for s in result.scalars().all()}
    missing = [sid for sid in shipment_ids if sid not in shipments]

    batch = await client.process_shipments(
        [ShipmentPayload.from_model(s) for s in shipments.values()]
    )
    if missing:
        for sid in missing:
            batch.failed_shipment_ids.append(sid)
            batch.shipment_errors[sid] = "Shipment not found"
        batch.message = (
            f"Processed {len(batch.shipment_ids)}/{len(shipment_ids)} "
            "Aramex shipments successfully"
        )

    for sid, shipment in shipments.items():
        if sid in batch.carrier_tracking_numbers:
            shipment.carrier_tracking_number = batch.carrier_tracking_numbers[sid]
            shipment.carrier_label_url = batch.carrier_label_urls.get(sid, "")
            shipment.carrier_label_pdf = batch.carrier_label_pdfs.get(sid)
            shipment.label_error = None
            shipment.status = "pre_transit"
        elif sid in batch.shipment_errors:
            shipment.label_error = batch.shipment_errors[sid]
    await db.commit()

    summary = batch.to_dict()
    notification_service.notify_labels_purchased(summary)
    return summary


@router.get("/labels/{shipment_id}")
async def get_label(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    shipment = await db.get(Shipment, shipment_id)
    if not shipment or (shipment.user_id != user["uid"] and user.get("role") != "admin"):
        raise HTTPException(404, "Shipment not found")
    if not shipment.carrier_label_pdf:
        raise HTTPException(404, "No carrier label stored for this shipment")
    try:
        pdf = base64.b64decode(shipment.carrier_label_pdf, validate=True)
    except binascii.Error:
        raise HTTPException(500, "Stored carrier label is corrupt")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="aramex-{shipment_id}.pdf"'},
    )
