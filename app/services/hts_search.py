"""HTS tariff lookup over the published Excel schedule.

The workbook is loaded once and scanned linearly: every sheet, row and cell.
Rates often sit one or two rows below the line carrying the code, so a hit
looks ahead up to two rows for a duty rate.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional, Sequence
from zipfile import BadZipFile

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from app.config import get_settings

logger = logging.getLogger(__name__)

_LOOKAHEAD_ROWS = 2
_UNIT_MARKERS = ("kg", "doz", "No.")


class TariffDataUnavailable(Exception):
    """The tariff workbook could not be loaded."""


@dataclass
class HTSResult:
    hs_code: str
    description: str
    general_rate: str
    special_rate: str
    unit: str
    chapter: int
    percentage: float
    sheet_name: str
    row_number: int

    def to_dict(self) -> dict:
        return asdict(self)


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def clean_hs_code(raw: str) -> str:
    """Normalize to ``XXXX.XX.XX``; inputs outside 6-10 digits come back unchanged."""
    cleaned = re.sub(r"[^\d.]", "", raw)
    digits = cleaned.replace(".", "")

    if len(digits) < 6 or len(digits) > 10:
        return raw
    if len(digits) >= 8:
        return f"{digits[:4]}.{digits[4:6]}.{digits[6:]}"
    return f"{digits[:4]}.{digits[4:6]}.00"


def is_hs_code_match(cell_value: str, clean_code: str, original_code: str) -> bool:
    if not cell_value:
        return False
    if clean_code in cell_value or original_code in cell_value:
        return True
    if clean_hs_code(cell_value) == clean_code:
        return True
    # e.g. "(con.) 6115.10.30"
    return re.search(rf"\b{re.escape(clean_code)}\b", cell_value) is not None


def is_duty_rate_pattern(value: str) -> bool:
    if not value:
        return False
    has_digit = re.search(r"\d", value) is not None
    if has_digit and ("%" in value or "¢" in value or "$" in value):
        return True
    return re.search(r"free", value, re.IGNORECASE) is not None


def parse_duty_rate(raw: str) -> float:
    """Duty rate as a fraction; specific (¢/$) rates are rough estimates."""
    if not raw:
        return 0.0
    if re.search(r"free", raw, re.IGNORECASE):
        return 0.0

    match = re.search(r"(\d+(?:\.\d+)?)\s*%", raw)
    if match:
        return float(match.group(1)) / 100

    match = re.search(r"(\d+(?:\.\d+)?)\s*¢", raw)
    if match:
        return float(match.group(1)) / 100

    match = re.search(r"\$(\d+(?:\.\d+)?)", raw)
    if match:
        return float(match.group(1)) * 0.01

    return 0.0


def _chapter(hs_code: str) -> int:
    digits = re.sub(r"\D", "", hs_code)[:2]
    return int(digits) if digits else 0


def extract_duty_rate_from_row(
    row: Sequence[Any],
    sheet_name: str,
    row_number: int,
    hs_code: str,
) -> Optional[HTSResult]:
    """Build a result from a row holding a duty rate, else ``None``."""
    cells = [_cell_text(v) for v in row or ()]

    rates = [c for c in cells if is_duty_rate_pattern(c)]
    if not rates:
        return None
    general_rate = rates[0]
    special_rate = rates[1] if len(rates) > 1 else ""

    description = next(
        (
            c for c in cells
            if len(c) > 20 and not is_duty_rate_pattern(c) and hs_code not in c
        ),
        "",
    )
    unit = next(
        (c for c in cells if len(c) < 30 and any(m in c for m in _UNIT_MARKERS)),
        "",
    )

    return HTSResult(
        hs_code=hs_code,
        description=description or f"Product under HS {hs_code}",
        general_rate=general_rate,
        special_rate=special_rate,
        unit=unit,
        chapter=_chapter(hs_code),
        percentage=parse_duty_rate(general_rate),
        sheet_name=sheet_name,
        row_number=row_number,
    )


_HS_CODE_IN_TEXT = re.compile(r"\b\d{4}\.\d{2}(?:\.\d{2,4})?\b")


class ExcelSearchService:
    """HS code and keyword search over the tariff workbook."""

    def __init__(self, excel_path: Optional[str] = None):
        self.excel_path = Path(excel_path or get_settings().hts_excel_path)
        self._sheets: Optional[list[tuple[str, list[tuple]]]] = None

    def load(self) -> list[tuple[str, list[tuple]]]:
        """Read every sheet into memory once."""
        if self._sheets is not None:
            return self._sheets

        if not self.excel_path.exists():
            raise TariffDataUnavailable(f"Excel file not found: {self.excel_path}")

        logger.info("Loading tariff workbook %s", self.excel_path)
        try:
            wb = openpyxl.load_workbook(self.excel_path, read_only=True, data_only=True)
        except (InvalidFileException, BadZipFile, KeyError, OSError) as e:
            raise TariffDataUnavailable(f"Cannot read {self.excel_path}: {e}") from e

        try:
            sheets = [
                (ws.title, [tuple(r) for r in ws.iter_rows(values_only=True)])
                for ws in wb.worksheets
            ]
        finally:
            wb.close()

        self._sheets = sheets
        logger.info("Loaded tariff workbook with %d sheets", len(sheets))
        return sheets

    def search_hs_code(self, hs_code: str) -> Optional[HTSResult]:
        clean_code = clean_hs_code(hs_code)
        for sheet_name, rows in self.load():
            result = self._search_sheet(sheet_name, rows, clean_code, hs_code)
            if result:
                logger.info(
                    "HS code %s found in sheet %s row %d",
                    hs_code, sheet_name, result.row_number,
                )
                return result
        logger.info("HS code %s not found", hs_code)
        return None

    @staticmethod
    def _search_sheet(
        sheet_name: str,
        rows: list[tuple],
        clean_code: str,
        original_code: str,
    ) -> Optional[HTSResult]:
        for i, row in enumerate(rows):
            if not row:
                continue
            for value in row:
                if not is_hs_code_match(_cell_text(value), clean_code, original_code):
                    continue
                for offset in range(_LOOKAHEAD_ROWS + 1):
                    if i + offset >= len(rows):
                        break
                    result = extract_duty_rate_from_row(
                        rows[i + offset], sheet_name, i + offset + 1, clean_code,
                    )
                    if result:
                        return result
        return None

    def search_description(self, terms: str, limit: int = 20) -> list[HTSResult]:
        """Rows whose combined text contains every search term."""
        words = [w.lower() for w in terms.split() if w.strip()]
        if not words:
            return []

        results: list[HTSResult] = []
        for sheet_name, rows in self.load():
            for i, row in enumerate(rows):
                cells = [_cell_text(v) for v in row or ()]
                text = " ".join(cells).lower()
                if not all(w in text for w in words):
                    continue
                code_match = None
                for c in cells:
                    m = _HS_CODE_IN_TEXT.search(c)
                    if m:
                        code_match = m.group(0)
                        break
                if not code_match:
                    continue
                result = extract_duty_rate_from_row(row, sheet_name, i + 1, code_match)
                if result is None:
                    continue
                results.append(result)
                if len(results) >= limit:
                    return results
        return results

    def stats(self) -> dict:
        sheets = self.load()
        return {
            "total_sheets": len(sheets),
            "sheet_names": [name for name, _ in sheets[:10]],
            "total_rows": sum(len(rows) for _, rows in sheets),
        }

    def reset(self) -> None:
        self._sheets = None


# Module-level singleton
excel_search = ExcelSearchService()
