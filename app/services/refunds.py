"""Shipment refund requests.

Users ask for refunds on their own shipments; each shipment can appear in at
most one of the user's requests. Admins approve or reject pending requests,
and an approval with an amount credits the user's balance.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Shipment, Transaction, User
from app.models.refunds import RefundRequest
from app.services.notification import NotificationService, notification_service

logger = logging.getLogger(__name__)

PROCESS_STATUSES = {"approved", "rejected"}
TRACKING_STATUSES = {
    "not_started", "submitted_to_carrier", "processing", "completed", "failed",
}


class RefundError(ValueError):
    """Request cannot be created or processed as asked."""


class RefundNotFound(LookupError):
    pass


class RefundForbidden(PermissionError):
    pass


def parse_shipment_ids(raw: Any) -> list[int]:
    """Accept a list, a JSON-encoded list, or a single id string."""
    if isinstance(raw, list):
        values = raw
    elif isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = raw
        values = decoded if isinstance(decoded, list) else [decoded]
    else:
        raise RefundError("Invalid shipment IDs format")

    try:
        ids = [int(v) for v in values]
    except (TypeError, ValueError):
        raise RefundError("Invalid shipment IDs format")
    if not ids:
        raise RefundError("At least one shipment is required")
    return ids


def refund_to_dict(refund: RefundRequest) -> dict:
    return {
        "id": refund.id,
        "user_id": refund.user_id,
        "shipment_ids": list(refund.shipment_ids or []),
        "reason": refund.reason,
        "status": refund.status,
        "requested_amount": refund.requested_amount,
        "processed_amount": refund.processed_amount,
        "admin_notes": refund.admin_notes,
    }


class RefundService:
    """Refund request workflow."""

    def __init__(self, notifier: Optional[NotificationService] = None):
        self.notifier = notifier or notification_service

    async def shipments_for_refund(
        self,
        db: AsyncSession,
        shipment_ids: list[int],
        user_id: int,
        is_admin: bool = False,
    ) -> list[Shipment]:
        stmt = select(Shipment).where(Shipment.id.in_(shipment_ids))
        if not is_admin:
            stmt = stmt.where(Shipment.user_id == user_id)
        result = await db.execute(stmt.order_by(Shipment.id))
        return list(result.scalars().all())

    async def create_request(
        self,
        db: AsyncSession,
        user_id: int,
        shipment_ids: list[int],
        reason: str,
        requested_amount: Optional[int] = None,
    ) -> RefundRequest:
        if not reason or not reason.strip():
            raise RefundError("Reason is required")

        existing = await db.execute(
            select(RefundRequest).where(RefundRequest.user_id == user_id)
        )
        already_requested: set[int] = set()
        for req in existing.scalars().all():
            already_requested.update(req.shipment_ids or [])

        conflicts = [sid for sid in shipment_ids if sid in already_requested]
        if conflicts:
            raise RefundError(
                f"Shipment(s) {', '.join(str(c) for c in conflicts)} are already included "
                "in an existing refund request. Each shipment can only be refunded once."
            )

        owned = await self.shipments_for_refund(db, shipment_ids, user_id)
        if len(owned) != len(set(shipment_ids)):
            raise RefundError("Some shipments not found or not owned by user")

        refund = RefundRequest(
            user_id=user_id,
            shipment_ids=shipment_ids,
            reason=reason.strip(),
            status="pending",
            requested_amount=requested_amount,
        )
        db.add(refund)
        await db.commit()
        await db.refresh(refund)

        logger.info("Refund request %s created by user %s", refund.id, user_id)
        self.notifier.notify_refund_requested(refund_to_dict(refund))
        return refund

    async def list_requests(
        self,
        db: AsyncSession,
        user_id: int,
        is_admin: bool = False,
        status: Optional[str] = None,
    ) -> list[RefundRequest]:
        stmt = select(RefundRequest)
        if not is_admin:
            stmt = stmt.where(RefundRequest.user_id == user_id)
        if status:
            stmt = stmt.where(RefundRequest.status == status)
        result = await db.execute(
            stmt.order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
        )
        return list(result.scalars().all())

    async def get_request(
        self,
        db: AsyncSession,
        refund_id: int,
        user_id: int,
        is_admin: bool = False,
    ) -> RefundRequest:
        refund = await db.get(RefundRequest, refund_id)
        if not refund:
            raise RefundNotFound(f"Refund request not found: {refund_id}")
        if refund.user_id != user_id and not is_admin:
            raise RefundForbidden("Access denied")
        return refund

    async def process_request(
        self,
        db: AsyncSession,
        refund_id: int,
        status: str,
        admin_id: int,
        processed_amount: Optional[int] = None,
        admin_notes: Optional[str] = None,
    ) -> RefundRequest:
        """Approve or reject a pending request; approvals credit the balance."""
        if status not in PROCESS_STATUSES:
            raise RefundError("Valid status (approved/rejected) is required")

        refund = await db.get(RefundRequest, refund_id)
        if not refund:
            raise RefundNotFound(f"Refund request not found: {refund_id}")
        if refund.status != "pending":
            raise RefundError(f"Cannot process refund request in status: {refund.status}")
        if processed_amount is not None and processed_amount < 0:
            raise RefundError("Processed amount cannot be negative")

        refund.status = status
        refund.processed_amount = processed_amount
        refund.admin_notes = admin_notes
        refund.processed_by = admin_id
        refund.processed_at = datetime.now(timezone.utc)

        if status == "approved" and processed_amount:
            await self._credit_refund(db, refund, processed_amount)

        await db.commit()
        await db.refresh(refund)

        logger.info("Refund request %s %s by admin %s", refund.id, status, admin_id)
        self.notifier.notify_refund_processed(refund_to_dict(refund))
        return refund

    async def _credit_refund(
        self,
        db: AsyncSession,
        refund: RefundRequest,
        amount: int,
    ) -> Transaction:
        user = await db.get(User, refund.user_id)
        if not user:
            raise RefundNotFound(f"User not found: {refund.user_id}")
        user.balance = (user.balance or 0) + amount

        shipment_ids = list(refund.shipment_ids or [])
        shipments = await self.shipments_for_refund(db, shipment_ids, refund.user_id, is_admin=True)
        tracking = [s.carrier_tracking_number or s.tracking_number for s in shipments]
        tracking = [t for t in tracking if t]

        description = (
            f"Refund approved for request #{refund.id} "
            f"(Shipments: {', '.join(str(s) for s in shipment_ids)}"
            f"{' - Tracking: ' + ', '.join(tracking) if tracking else ''})"
        )
        primary = next(
            (s for s in shipments if s.carrier_tracking_number or s.tracking_number),
            shipments[0] if shipments else None,
        )

        txn = Transaction(
            user_id=user.id,
            amount=amount,
            description=description,
            shipment_id=primary.id if primary else None,
        )
        db.add(txn)
        return txn

    async def update_tracking(
        self,
        db: AsyncSession,
        refund_id: int,
        admin_tracking_status: str,
        carrier_refund_reference: Optional[str] = None,
        submitted_to_carrier_at: Optional[datetime] = None,
        carrier_response_at: Optional[datetime] = None,
        expected_refund_date: Optional[datetime] = None,
        internal_notes: Optional[str] = None,
    ) -> RefundRequest:
        if admin_tracking_status not in TRACKING_STATUSES:
            raise RefundError(f"Invalid admin tracking status: {admin_tracking_status}")

        refund = await db.get(RefundRequest, refund_id)
        if not refund:
            raise RefundNotFound(f"Refund request not found: {refund_id}")

        refund.admin_tracking_status = admin_tracking_status
        updates = {
            "carrier_refund_reference": carrier_refund_reference,
            "submitted_to_carrier_at": submitted_to_carrier_at,
            "carrier_response_at": carrier_response_at,
            "expected_refund_date": expected_refund_date,
            "internal_notes": internal_notes,
        }
        for key, val in updates.items():
            if val is not None:
                setattr(refund, key, val)

        await db.commit()
        await db.refresh(refund)
        return refund
