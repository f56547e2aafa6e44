"""Aramex carrier integration.

Builds Aramex ShippingAPI.V2 JSON requests for rate quotes and shipment
creation, downloads label PDFs, and runs batch label purchases with
per-shipment success/failure tracking. Calls are sequential with no retries.
"""

from __future__ import annotations

import base64
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from app.config import Settings, get_settings
from app.services.currency import TRYConverter, try_converter

logger = logging.getLogger(__name__)

RATE_PATH = "/RateCalculator/Service_1_0.svc/json/CalculateRate"
SHIPPING_PATH = "/Shipping/Service_1_0.svc/json/CreateShipments"

DEFAULT_SERVICE_CODE = "PPX"
VOLUMETRIC_DIVISOR = 5000
ACCOUNT_ERROR_CODES = {"ERR60", "ERR82"}

# Destinations where Aramex coverage is strongest; others are still quoted.
PRIMARY_COVERAGE = {
    "AE", "SA", "KW", "BH", "QA", "OM", "JO", "LB", "EG", "TR", "US", "GB", "DE", "FR",
}


class AramexError(Exception):
    """Aramex request could not be completed."""


@dataclass(frozen=True)
class AramexService:
    code: str
    name: str
    type: str


SERVICES = [
    AramexService(code="PPX", name="Aramex Priority Parcel Express", type="EXPRESS"),
]


@dataclass
class RateAddress:
    city: str
    country_code: str
    postal_code: str = ""
    address: str = ""


@dataclass
class Dimensions:
    length: float = 10
    width: float = 10
    height: float = 5


@dataclass
class AramexRate:
    service_code: str
    service_name: str
    service_type: str
    amount: Decimal
    currency: str
    estimated_days: int = 2

    def to_dict(self) -> dict:
        return {
            "service_code": self.service_code,
            "service_name": self.service_name,
            "service_type": self.service_type,
            "amount": self.amount,
            "currency": self.currency,
            "estimated_days": self.estimated_days,
        }


@dataclass
class ShipmentPayload:
    """Carrier-facing view of a shipment; blank sender fields use warehouse defaults."""
    id: int
    receiver_name: str
    receiver_address: str
    receiver_city: str
    receiver_country_code: str
    receiver_postal_code: str = ""
    receiver_address2: str = ""
    receiver_company: str = ""
    receiver_phone: str = ""
    receiver_email: str = ""
    sender_name: str = ""
    sender_company: str = ""
    sender_address: str = ""
    sender_address2: str = ""
    sender_city: str = ""
    sender_postal_code: str = ""
    sender_country_code: str = ""
    sender_phone: str = ""
    sender_email: str = ""
    package_length: float = 0
    package_width: float = 0
    package_height: float = 0
    package_weight: float = 0
    piece_count: int = 1
    package_contents: str = ""
    provider_service_code: str = ""

    @classmethod
    def from_model(cls, shipment: Any) -> "ShipmentPayload":
        """Build from a ``Shipment`` row (or any object with the same attributes)."""
        kwargs = {}
        for name in cls.__dataclass_fields__:
            value = getattr(shipment, name, None)
            if value is None:
                continue
            if isinstance(value, Decimal):
                value = float(value)
            kwargs[name] = value
        return cls(**kwargs)


@dataclass
class ShipmentResult:
    success: bool
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    label_pdf: Optional[str] = None  # base64
    error: Optional[str] = None
    response: Optional[dict] = None


@dataclass
class BatchResult:
    """Outcome of a batch label purchase, keyed by shipment id."""
    total: int = 0
    success: bool = False
    message: str = ""
    shipment_ids: list[int] = field(default_factory=list)
    failed_shipment_ids: list[int] = field(default_factory=list)
    carrier_tracking_numbers: dict[int, str] = field(default_factory=dict)
    carrier_label_urls: dict[int, str] = field(default_factory=dict)
    carrier_label_pdfs: dict[int, str] = field(default_factory=dict)
    shipment_errors: dict[int, str] = field(default_factory=dict)

    def to_dict(self, include_pdfs: bool = False) -> dict:
        data = {
            "success": self.success,
            "message": self.message,
            "shipment_ids": self.shipment_ids,
            "failed_shipment_ids": self.failed_shipment_ids,
            "carrier_tracking_numbers": self.carrier_tracking_numbers,
            "carrier_label_urls": self.carrier_label_urls,
            "shipment_errors": self.shipment_errors,
        }
        if include_pdfs:
            data["carrier_label_pdfs"] = self.carrier_label_pdfs
        return data


# ── Helpers ─────────────────────────────────────────────

def chargeable_weight(
    actual_kg: float,
    length_cm: float,
    width_cm: float,
    height_cm: float,
) -> float:
    """Greater of actual and volumetric weight (L*W*H / 5000), 2 decimals."""
    volumetric = (length_cm * width_cm * height_cm) / VOLUMETRIC_DIVISOR
    weight = max(actual_kg, volumetric)
    logger.debug(
        "Chargeable weight: actual=%.2f volumetric=%.2f chargeable=%.2f",
        actual_kg, volumetric, weight,
    )
    return round(weight, 2)


def service_code_from_provider(provider_service_code: Optional[str]) -> str:
    """``aramex-ppx`` -> ``PPX``."""
    if provider_service_code:
        parts = provider_service_code.lower().split("-")
        if len(parts) > 1 and parts[-1]:
            return parts[-1].upper()
    return DEFAULT_SERVICE_CODE


def aramex_date(dt: datetime) -> str:
    """Aramex wire date: ``/Date(<epoch millis>)/``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return f"/Date({int(dt.timestamp() * 1000)})/"


def _empty_references(first: str = "") -> dict:
    return {
        "Reference1": first,
        "Reference2": "",
        "Reference3": "",
        "Reference4": "",
        "Reference5": "",
    }


def _notifications_have_account_error(notifications: Optional[list]) -> bool:
    return any(
        (n or {}).get("Code") in ACCOUNT_ERROR_CODES
        for n in notifications or []
    )


# ── Client ──────────────────────────────────────────────

class AramexClient:
    """Aramex ShippingAPI.V2 JSON client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        converter: Optional[TRYConverter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.converter = converter or try_converter
        self._transport = transport
        base = self.settings.aramex_base_url.rstrip("/")
        self.rate_url = f"{base}{RATE_PATH}"
        self.shipping_url = f"{base}{SHIPPING_PATH}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.aramex_timeout_seconds,
            transport=self._transport,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": "MoogShip-Aramex-Client/1.0",
            },
        )

    def require_credentials(self) -> None:
        s = self.settings
        if not (s.aramex_username and s.aramex_password and s.aramex_account_number):
            raise AramexError("Aramex credentials are not configured")

    def client_info(self) -> dict:
        s = self.settings
        return {
            "UserName": s.aramex_username,
            "Password": s.aramex_password,
            "Version": "v1.0",
            "AccountNumber": s.aramex_account_number,
            "AccountPin": s.aramex_account_pin,
            "AccountEntity": s.aramex_account_entity,
            "AccountCountryCode": s.aramex_account_country_code,
        }

    # ── Rates ───────────────────────────────────────────

    def build_rate_request(
        self,
        origin: RateAddress,
        destination: RateAddress,
        weight_kg: float,
        number_of_pieces: int = 1,
        dimensions: Optional[Dimensions] = None,
        service_code: str = DEFAULT_SERVICE_CODE,
        description: str = "General Merchandise",
    ) -> dict:
        dims = dimensions or Dimensions()
        return {
            "ClientInfo": self.client_info(),
            "Transaction": _empty_references("MoogShipRateRequest"),
            "OriginAddress": {
                "Line1": origin.address or "Warehouse Istanbul",
                "Line2": "",
                "Line3": "",
                "City": origin.city,
                "PostCode": origin.postal_code or "34394",
                "CountryCode": origin.country_code,
            },
            "DestinationAddress": {
                "Line1": destination.address or f"Customer {destination.city}",
                "Line2": "",
                "Line3": "",
                "City": destination.city,
                "PostCode": destination.postal_code or "00000",
                "CountryCode": destination.country_code,
            },
            "ShipmentDetails": {
                "PaymentType": "P",
                "ProductGroup": "EXP",
                "ProductType": service_code,
                "ActualWeight": {"Unit": "KG", "Value": weight_kg},
                "ChargeableWeight": {"Unit": "KG", "Value": weight_kg},
                "NumberOfPieces": number_of_pieces,
                "DescriptionOfGoods": description,
                "GoodsOriginCountry": origin.country_code,
                "Dimensions": {
                    "Length": dims.length,
                    "Width": dims.width,
                    "Height": dims.height,
                    "Unit": "CM",
                },
                "PaymentOptions": "",
            },
            "PreferredCurrencyCode": "USD",
        }

    async def calculate_rates(
        self,
        origin: RateAddress,
        destination: RateAddress,
        weight_kg: float,
        number_of_pieces: int = 1,
        dimensions: Optional[Dimensions] = None,
    ) -> list[AramexRate]:
        """Quote every offered Aramex service; failed services are skipped."""
        self.require_credentials()
        dest = destination.country_code.upper()
        if dest not in PRIMARY_COVERAGE:
            logger.info("Aramex: %s is outside primary coverage, quoting anyway", dest)

        rates: list[AramexRate] = []
        async with self._client() as client:
            for service in SERVICES:
                payload = self.build_rate_request(
                    origin, destination, weight_kg, number_of_pieces, dimensions, service.code,
                )
                logger.info("Aramex: requesting %s rate to %s", service.code, dest)
                try:
                    resp = await client.post(self.rate_url, json=payload)
                except httpx.HTTPError as e:
                    logger.warning("Aramex: rate request for %s failed: %s", service.code, e)
                    continue

                if resp.status_code != 200:
                    logger.warning(
                        "Aramex: HTTP %s for %s to %s: %s",
                        resp.status_code, service.code, dest, resp.text,
                    )
                    continue

                try:
                    data = resp.json()
                except ValueError:
                    logger.warning("Aramex: non-JSON rate response for %s", service.code)
                    continue

                if data.get("HasErrors"):
                    notifications = data.get("Notifications")
                    if _notifications_have_account_error(notifications):
                        logger.error(
                            "Aramex: skipping %s, account configuration error: %s",
                            service.code, notifications,
                        )
                    else:
                        logger.warning("Aramex: %s rate errors: %s", service.code, notifications)
                    continue

                total = data.get("TotalAmount") or {}
                if total.get("Value") is None:
                    logger.warning("Aramex: %s response carried no TotalAmount", service.code)
                    continue

                amount = Decimal(str(total["Value"]))
                currency = total.get("CurrencyCode") or "USD"
                if currency == "TRY":
                    amount = await self.converter.try_to_usd(amount)
                    currency = "USD"

                logger.info("Aramex: %s to %s costs %s %s", service.code, dest, amount, currency)
                rates.append(AramexRate(
                    service_code=service.code,
                    service_name=service.name,
                    service_type=service.type,
                    amount=amount,
                    currency=currency,
                ))

        return rates

    # ── Shipments ───────────────────────────────────────

    def build_shipment_request(
        self,
        shipment: ShipmentPayload,
        service_code: str = DEFAULT_SERVICE_CODE,
        now: Optional[datetime] = None,
    ) -> dict:
        s = self.settings
        when = aramex_date(now or datetime.now(timezone.utc))
        sender_phone = shipment.sender_phone or s.sender_phone
        sender_country = shipment.sender_country_code or s.sender_country_code
        contents = shipment.package_contents

        return {
            "ClientInfo": self.client_info(),
            "Transaction": _empty_references(f"SH-{shipment.id:06d}"),
            "Shipments": [
                {
                    "Reference1": f"Order#{shipment.id}",
                    "Shipper": {
                        "Reference1": "",
                        "Reference2": "",
                        "AccountNumber": s.aramex_account_number,
                        "PartyAddress": {
                            "Line1": shipment.sender_address or s.sender_address,
                            "Line2": shipment.sender_address2,
                            "Line3": "",
                            "City": shipment.sender_city or s.sender_city,
                            "PostCode": shipment.sender_postal_code or s.sender_postal_code,
                            "CountryCode": sender_country,
                        },
                        "Contact": {
                            "Department": "",
                            "PersonName": shipment.sender_name or "Sender",
                            "CompanyName": shipment.sender_company or s.sender_company,
                            "PhoneNumber1": sender_phone,
                            "PhoneNumber2": "",
                            "CellPhone": sender_phone,
                            "EmailAddress": shipment.sender_email or s.sender_email,
                            "Type": "C",
                        },
                    },
                    "Consignee": {
                        "Reference1": "",
                        "Reference2": "",
                        "AccountNumber": "",
                        "PartyAddress": {
                            "Line1": shipment.receiver_address,
                            "Line2": shipment.receiver_address2,
                            "Line3": "",
                            "City": shipment.receiver_city,
                            "PostCode": shipment.receiver_postal_code or "00000",
                            "CountryCode": shipment.receiver_country_code,
                        },
                        "Contact": {
                            "Department": "",
                            "PersonName": shipment.receiver_name,
                            "CompanyName": shipment.receiver_company,
                            "PhoneNumber1": shipment.receiver_phone,
                            "PhoneNumber2": "",
                            "CellPhone": shipment.receiver_phone,
                            "EmailAddress": (
                                shipment.receiver_email
                                or shipment.sender_email
                                or s.sender_email
                            ),
                            "Type": "C",
                        },
                    },
                    "ShippingDateTime": when,
                    "DueDate": when,
                    "PickupLocation": "Warehouse",
                    "Details": {
                        "Dimensions": {
                            "Length": shipment.package_length,
                            "Width": shipment.package_width,
                            "Height": shipment.package_height,
                            "Unit": "CM",
                        },
                        "ActualWeight": {"Unit": "KG", "Value": shipment.package_weight},
                        "ChargeableWeight": {
                            "Unit": "KG",
                            "Value": chargeable_weight(
                                shipment.package_weight,
                                shipment.package_length,
                                shipment.package_width,
                                shipment.package_height,
                            ),
                        },
                        "ProductGroup": "EXP",
                        "ProductType": service_code,
                        "PaymentType": "P",
                        "PaymentOptions": "",
                        "Services": "",
                        "NumberOfPieces": shipment.piece_count or 1,
                        "DescriptionOfGoods": contents or "Package",
                        "GoodsOriginCountry": sender_country,
                        "Items": [
                            {
                                "PackageType": "Box",
                                "Quantity": 1,
                                "Weight": {
                                    "Unit": "KG",
                                    "Value": max(1, math.floor(shipment.package_weight or 1)),
                                },
                                "Comments": f"Contains {contents or 'items'}",
                                "Reference": shipment.sender_company or s.sender_company,
                            }
                        ],
                    },
                }
            ],
            "LabelInfo": {"ReportID": 9201, "ReportType": "URL"},
        }

    async def download_label(self, client: httpx.AsyncClient, url: str) -> Optional[str]:
        """Fetch a label PDF and return it base64-encoded, or ``None`` on failure."""
        try:
            resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Aramex: label download from %s failed: %s", url, e)
            return None
        if resp.status_code != 200:
            logger.warning("Aramex: label download returned HTTP %s", resp.status_code)
            return None
        return base64.b64encode(resp.content).decode("ascii")

    async def create_shipment(
        self,
        shipment: ShipmentPayload,
        service_code: str = DEFAULT_SERVICE_CODE,
    ) -> ShipmentResult:
        """Create one Aramex shipment and fetch its label.

        Carrier-side failures come back as an unsuccessful ``ShipmentResult``;
        missing credentials raise ``AramexError``.
        """
        self.require_credentials()
        logger.info("Aramex: creating shipment %s with service %s", shipment.id, service_code)
        payload = self.build_shipment_request(shipment, service_code)

        async with self._client() as client:
            try:
                resp = await client.post(self.shipping_url, json=payload)
            except httpx.HTTPError as e:
                logger.error("Aramex: shipment %s request failed: %s", shipment.id, e)
                return ShipmentResult(success=False, error=str(e) or "Unknown Aramex API error")

            if not resp.is_success:
                return ShipmentResult(
                    success=False,
                    error=f"Aramex API HTTP error: {resp.status_code} - {resp.text}",
                )

            try:
                result = resp.json()
            except ValueError:
                return ShipmentResult(success=False, error="Aramex API returned invalid JSON")

            if result.get("HasErrors"):
                notifications = result.get("Notifications")
                return ShipmentResult(
                    success=False,
                    error=f"Aramex API error: {json.dumps(notifications)}",
                    response=result,
                )

            shipments = result.get("Shipments") or []
            if not shipments:
                return ShipmentResult(
                    success=False,
                    error="No shipment data in Aramex response",
                    response=result,
                )

            created = shipments[0]
            label_url = (created.get("ShipmentLabel") or {}).get("LabelURL")
            label_pdf = None
            if label_url:
                label_pdf = await self.download_label(client, label_url)
            else:
                logger.warning("Aramex: no label URL for shipment %s", shipment.id)

        return ShipmentResult(
            success=True,
            tracking_number=str(created.get("ID")) if created.get("ID") else None,
            label_url=label_url,
            label_pdf=label_pdf,
            response=result,
        )

    async def process_shipments(self, shipments: list[ShipmentPayload]) -> BatchResult:
        """Purchase labels for each shipment in turn, recording each outcome."""
        batch = BatchResult(total=len(shipments))
        logger.info("Aramex: processing %d shipments for label purchase", len(shipments))

        for shipment in shipments:
            service_code = service_code_from_provider(shipment.provider_service_code)
            try:
                result = await self.create_shipment(shipment, service_code)
            except (AramexError, ValueError, TypeError) as e:
                batch.failed_shipment_ids.append(shipment.id)
                batch.shipment_errors[shipment.id] = str(e) or "Aramex processing error"
                logger.error("Aramex: error processing shipment %s: %s", shipment.id, e)
                continue

            if result.success and result.tracking_number:
                batch.shipment_ids.append(shipment.id)
                batch.carrier_tracking_numbers[shipment.id] = result.tracking_number
                if result.label_url:
                    batch.carrier_label_urls[shipment.id] = result.label_url
                if result.label_pdf:
                    batch.carrier_label_pdfs[shipment.id] = result.label_pdf
                logger.info(
                    "Aramex: shipment %s purchased, tracking %s",
                    shipment.id, result.tracking_number,
                )
            else:
                batch.failed_shipment_ids.append(shipment.id)
                batch.shipment_errors[shipment.id] = result.error or "Unknown Aramex API error"
                logger.error(
                    "Aramex: shipment %s failed: %s",
                    shipment.id, batch.shipment_errors[shipment.id],
                )

        batch.success = len(batch.shipment_ids) > 0
        batch.message = (
            f"Processed {len(batch.shipment_ids)}/{len(shipments)} Aramex shipments successfully"
        )
        logger.info(
            "Aramex: batch complete - %d successful, %d failed",
            len(batch.shipment_ids), len(batch.failed_shipment_ids),
        )
        return batch
