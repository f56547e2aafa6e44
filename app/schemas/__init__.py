"""Pydantic schemas for the MoogShip API."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ── Users ────────────────────────────────────────────────
class UserRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=8)
    name: str = ""
    company_name: Optional[str] = None


class UserOut(BaseModel):
    id: int
    username: str
    name: str
    email: str
    company_name: Optional[str]
    role: str
    is_approved: bool
    balance: int
    minimum_balance: Optional[int]
    created_at: datetime

    model_config = {"from_attributes": True}


class UserApprove(BaseModel):
    minimum_balance: Optional[int] = None


# ── Shipments ────────────────────────────────────────────
class ShipmentCreate(BaseModel):
    sender_name: str = ""
    sender_company: str = ""
    sender_address: str = ""
    sender_address2: str = ""
    sender_city: str = ""
    sender_postal_code: str = ""
    sender_country_code: str = ""
    sender_phone: str = ""
    sender_email: str = ""

    receiver_name: str = Field(..., min_length=1)
    receiver_company: str = ""
    receiver_address: str = Field(..., min_length=1)
    receiver_address2: str = ""
    receiver_city: str = Field(..., min_length=1)
    receiver_postal_code: str = ""
    receiver_country_code: str = Field(..., min_length=2, max_length=2)
    receiver_phone: str = ""
    receiver_email: str = ""

    package_length: Decimal = Field(Decimal("0"), ge=0)
    package_width: Decimal = Field(Decimal("0"), ge=0)
    package_height: Decimal = Field(Decimal("0"), ge=0)
    package_weight: Decimal = Field(..., gt=0)
    piece_count: int = Field(1, ge=1)
    package_contents: str = ""
    provider_service_code: str = "aramex-ppx"


class ShipmentOut(BaseModel):
    id: int
    user_id: int
    status: str
    receiver_name: str
    receiver_city: str
    receiver_country_code: str
    package_length: Decimal
    package_width: Decimal
    package_height: Decimal
    package_weight: Decimal
    piece_count: int
    package_contents: str
    provider_service_code: str
    tracking_number: str
    carrier_tracking_number: str
    carrier_label_url: str
    label_error: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Aramex ───────────────────────────────────────────────
class RateAddressIn(BaseModel):
    city: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2, max_length=2)
    postal_code: str = ""
    address: str = ""


class DimensionsIn(BaseModel):
    length: float = Field(10, gt=0)
    width: float = Field(10, gt=0)
    height: float = Field(5, gt=0)


class RateRequest(BaseModel):
    origin: RateAddressIn
    destination: RateAddressIn
    weight_kg: float = Field(..., gt=0)
    number_of_pieces: int = Field(1, ge=1)
    dimensions: DimensionsIn = Field(default_factory=DimensionsIn)


class RateOut(BaseModel):
    service_code: str
    service_name: str
    service_type: str
    amount: Decimal
    currency: str
    estimated_days: int


class PurchaseLabelsRequest(BaseModel):
    shipment_ids: list[int] = Field(..., min_length=1)


# ── Refunds ──────────────────────────────────────────────
class RefundCreate(BaseModel):
    shipment_ids: Any
    reason: str = Field(..., min_length=1)
    requested_amount: Optional[int] = Field(None, ge=0)


class RefundShipmentsQuery(BaseModel):
    shipment_ids: list[int]


class RefundProcess(BaseModel):
    status: Literal["approved", "rejected"]
    processed_amount: Optional[int] = Field(None, ge=0)
    admin_notes: Optional[str] = None


class RefundTrackingUpdate(BaseModel):
    admin_tracking_status: str
    carrier_refund_reference: Optional[str] = None
    submitted_to_carrier_at: Optional[datetime] = None
    carrier_response_at: Optional[datetime] = None
    expected_refund_date: Optional[datetime] = None
    internal_notes: Optional[str] = None


class RefundOut(BaseModel):
    id: int
    user_id: int
    shipment_ids: list[int]
    reason: str
    status: str
    requested_amount: Optional[int]
    processed_amount: Optional[int]
    admin_notes: Optional[str]
    processed_by: Optional[int]
    processed_at: Optional[datetime]
    admin_tracking_status: Optional[str]
    carrier_refund_reference: Optional[str]
    submitted_to_carrier_at: Optional[datetime]
    carrier_response_at: Optional[datetime]
    expected_refund_date: Optional[datetime]
    internal_notes: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Billing reminders ────────────────────────────────────
ReminderTypeName = Literal["balance", "overdue", "payment_request"]


class ReminderSend(BaseModel):
    user_id: int
    subject: str = Field(..., min_length=1)
    message: Optional[str] = None
    reminder_type: ReminderTypeName = "balance"
    admin_notes: Optional[str] = None


class BulkReminderSend(BaseModel):
    user_ids: list[int] = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    message: Optional[str] = None
    reminder_type: ReminderTypeName = "balance"
    admin_notes: Optional[str] = None
