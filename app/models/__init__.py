"""MoogShip data models."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    """Customer or admin account. Balances are kept in cents."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(300), default="")
    email = Column(String(320), unique=True, nullable=False, index=True)
    company_name = Column(String(300), nullable=True)
    password_hash = Column(String(200), nullable=False)
    role = Column(Enum("user", "admin", name="user_role"), default="user")
    is_approved = Column(Boolean, default=False)
    balance = Column(Integer, default=0)
    minimum_balance = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    shipments = relationship("Shipment", back_populates="user")


class Shipment(Base):
    """Outbound shipment and its carrier label state."""
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(
        Enum("pending", "approved", "pre_transit", "in_transit", "delivered",
             "cancelled", name="shipment_status"),
        default="pending",
    )

    sender_name = Column(String(300), default="")
    sender_company = Column(String(300), default="")
    sender_address = Column(String(500), default="")
    sender_address2 = Column(String(500), default="")
    sender_city = Column(String(200), default="")
    sender_postal_code = Column(String(20), default="")
    sender_country_code = Column(String(2), default="")
    sender_phone = Column(String(50), default="")
    sender_email = Column(String(320), default="")

    receiver_name = Column(String(300), nullable=False)
    receiver_company = Column(String(300), default="")
    receiver_address = Column(String(500), nullable=False)
    receiver_address2 = Column(String(500), default="")
    receiver_city = Column(String(200), nullable=False)
    receiver_postal_code = Column(String(20), default="")
    receiver_country_code = Column(String(2), nullable=False)
    receiver_phone = Column(String(50), default="")
    receiver_email = Column(String(320), default="")

    package_length = Column(Numeric(8, 2), default=0)
    package_width = Column(Numeric(8, 2), default=0)
    package_height = Column(Numeric(8, 2), default=0)
    package_weight = Column(Numeric(8, 3), default=0)
    piece_count = Column(Integer, default=1)
    package_contents = Column(String(500), default="")
    provider_service_code = Column(String(100), default="")

    tracking_number = Column(String(200), default="")
    carrier_tracking_number = Column(String(200), default="")
    carrier_label_url = Column(String(1000), default="")
    carrier_label_pdf = Column(Text, nullable=True)  # base64
    label_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="shipments")


class Transaction(Base):
    """Balance movement in cents (positive credits, negative debits)."""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    description = Column(Text, default="")
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
