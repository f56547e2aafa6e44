"""Billing reminder models."""

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, Text,
)

from app.database import Base
from app.models import utcnow


class BillingReminder(Base):
    """Payment reminder sent by an admin, with the balance snapshot at send time."""
    __tablename__ = "billing_reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sent_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    subject = Column(Text, nullable=False)
    message = Column(Text, default="")
    reminder_type = Column(
        Enum("balance", "overdue", "payment_request", name="reminder_type"),
        default="balance",
    )
    current_balance = Column(Integer, nullable=False)
    minimum_balance = Column(Integer, nullable=True)
    admin_notes = Column(Text, nullable=True)
    email_sent = Column(Boolean, default=False)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    email_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
