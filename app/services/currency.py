"""TRY to USD conversion for carrier quotes.

Aramex quotes Turkish accounts in TRY. Rates come from the Turkish Central
Bank (TCMB) daily XML, with a fixed fallback rate when TCMB is unreachable.
"""

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

_CACHE_TTL_SECONDS = 3600  # 1 hour
_CENT = Decimal("0.01")


def parse_tcmb_usd_rate(xml_text: str) -> Optional[Decimal]:
    """Return the USD banknote selling rate from a TCMB ``today.xml`` document."""
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return None

    for currency in root.iter("Currency"):
        if currency.get("CurrencyCode") != "USD":
            continue
        value = (currency.findtext("BanknoteSelling") or "").strip()
        try:
            rate = Decimal(value)
        except InvalidOperation:
            return None
        return rate if rate > 0 else None
    return None


class TRYConverter:
    """Converts TRY amounts to USD using TCMB with a fixed fallback rate."""

    def __init__(
        self,
        tcmb_url: Optional[str] = None,
        fallback_rate: Optional[float] = None,
        rate_adjustment: Optional[float] = None,
        markup: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.tcmb_url = tcmb_url or settings.tcmb_url
        self.fallback_rate = Decimal(str(fallback_rate or settings.try_usd_fallback_rate))
        self.rate_adjustment = Decimal(str(rate_adjustment or settings.tcmb_rate_adjustment))
        self.markup = Decimal(str(markup or settings.conversion_markup))
        self._transport = transport
        self._rate: Optional[Decimal] = None
        self._last_fetch: Optional[datetime] = None

    async def fetch_rate(self, force: bool = False) -> Optional[Decimal]:
        """Fetch the TCMB USD selling rate; ``None`` when TCMB is unavailable."""
        now = datetime.now(timezone.utc)
        if not force and self._rate is not None and self._last_fetch:
            elapsed = (now - self._last_fetch).total_seconds()
            if elapsed < _CACHE_TTL_SECONDS:
                return self._rate

        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                resp = await client.get(self.tcmb_url)
        except httpx.HTTPError as e:
            logger.warning("TCMB rate request failed: %s", e)
            return None

        if resp.status_code != 200:
            logger.warning("TCMB returned HTTP %s", resp.status_code)
            return None

        rate = parse_tcmb_usd_rate(resp.text)
        if rate is None:
            logger.warning("TCMB response had no USD banknote selling rate")
            return None

        self._rate = rate
        self._last_fetch = now
        return rate

    async def try_to_usd(self, amount: Union[Decimal, float, str]) -> Decimal:
        """Convert a TRY amount to USD, markup included."""
        try_amount = Decimal(str(amount))
        rate = await self.fetch_rate()
        if rate is not None:
            effective_rate = rate * self.rate_adjustment
            source = "TCMB"
        else:
            effective_rate = self.fallback_rate
            source = "fallback"

        usd = (try_amount / effective_rate * self.markup).quantize(_CENT, rounding=ROUND_HALF_UP)
        logger.info(
            "Converted %s TRY to %s USD (%s rate %s, markup %s)",
            try_amount, usd, source, effective_rate, self.markup,
        )
        return usd

    def reset(self) -> None:
        self._rate = None
        self._last_fetch = None


# Module-level singleton
try_converter = TRYConverter()
