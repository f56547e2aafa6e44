"""Refund request models."""

from sqlalchemy import (
    Column, DateTime, Enum, ForeignKey, Integer, String, Text, JSON,
)

from app.database import Base
from app.models import utcnow


class RefundRequest(Base):
    """Customer request to refund one or more shipments."""
    __tablename__ = "refund_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    shipment_ids = Column(JSON, default=list)
    reason = Column(Text, nullable=False)
    status = Column(
        Enum("pending", "approved", "rejected", name="refund_status"),
        default="pending",
    )
    requested_amount = Column(Integer, nullable=True)  # cents
    processed_amount = Column(Integer, nullable=True)  # cents
    admin_notes = Column(Text, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Third-party refund follow-up
    admin_tracking_status = Column(
        Enum(
            "not_started", "submitted_to_carrier", "processing",
            "completed", "failed",
            name="refund_tracking_status",
        ),
        default="not_started",
    )
    carrier_refund_reference = Column(String(200), nullable=True)
    submitted_to_carrier_at = Column(DateTime(timezone=True), nullable=True)
    carrier_response_at = Column(DateTime(timezone=True), nullable=True)
    expected_refund_date = Column(DateTime(timezone=True), nullable=True)
    internal_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
