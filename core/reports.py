"""Receipt exports, spending totals and document expiry checks.

Everything here works on plain record dictionaries as held by the local store
so the helpers can be used offline and without the sync engine.
"""
from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.entities import receipt_category_label, vehicle_label
from core.errors import ValidationError
from core.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

EXPIRING_WITHIN_DAYS = 30

EXPIRY_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("warranty", "warranty_expiration"),
    ("insurance", "insurance_expiration"),
    ("registration", "registration_expiration"),
)

DATE_RANGES: Tuple[str, ...] = ("all", "year", "quarter", "month", "custom")
EXPORT_FORMATS: Tuple[str, ...] = ("csv", "json")
EXPORT_COLUMNS: Tuple[str, ...] = ("Date", "Vendor", "Amount", "Category", "Vehicle", "Description")


def as_date(value: Any) -> Optional[date]:
    """Return the calendar date of ``value`` or ``None`` when it is not a date."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            pass
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def _amount(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(str(value).replace(",", "")) if value not in (None, "") else 0.0
    except ValueError:
        return 0.0


# ----------------------------------------------------------------------
# Expiry
# ----------------------------------------------------------------------
class ExpiryState(Enum):
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    EXPIRING = "expiring"
    VALID = "valid"


@dataclass(frozen=True)
class ExpiryStatus:
    state: ExpiryState
    expires: Optional[date] = None
    days_left: Optional[int] = None

    @property
    def text(self) -> str:
        if self.state is ExpiryState.EXPIRED:
            return "Expired"
        if self.state is ExpiryState.EXPIRING:
            return f"{self.days_left} days left"
        if self.state is ExpiryState.VALID and self.expires is not None:
            return self.expires.isoformat()
        return "Unknown"

    @property
    def needs_attention(self) -> bool:
        return self.state in (ExpiryState.EXPIRED, ExpiryState.EXPIRING)


def expiry_status(value: Any, today: Optional[date] = None) -> ExpiryStatus:
    """Classify an expiry date as expired, expiring within 30 days or valid."""

    expires = as_date(value)
    if expires is None:
        return ExpiryStatus(ExpiryState.UNKNOWN)
    today = today or date.today()
    days_left = (expires - today).days
    if days_left < 0:
        state = ExpiryState.EXPIRED
    elif days_left <= EXPIRING_WITHIN_DAYS:
        state = ExpiryState.EXPIRING
    else:
        state = ExpiryState.VALID
    return ExpiryStatus(state, expires, days_left)


def vehicle_expiry(vehicle: Mapping[str, Any], today: Optional[date] = None) -> Dict[str, ExpiryStatus]:
    return {label: expiry_status(vehicle.get(field), today) for label, field in EXPIRY_FIELDS}


def expiry_alerts(
    vehicles: Iterable[Mapping[str, Any]],
    today: Optional[date] = None,
) -> List[Tuple[Mapping[str, Any], str, ExpiryStatus]]:
    """Return ``(vehicle, document, status)`` for every expired or expiring document."""

    alerts = []
    for vehicle in vehicles:
        for label, status in vehicle_expiry(vehicle, today).items():
            if status.needs_attention:
                alerts.append((vehicle, label, status))
    return alerts


# ----------------------------------------------------------------------
# Receipt totals
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ReceiptTotals:
    count: int
    total: float
    this_month: float
    this_year: float


def receipt_totals(receipts: Sequence[Mapping[str, Any]], today: Optional[date] = None) -> ReceiptTotals:
    today = today or date.today()
    month_start = today.replace(day=1)
    year_start = today.replace(month=1, day=1)
    total = this_month = this_year = 0.0
    for receipt in receipts:
        amount = _amount(receipt.get("amount"))
        total += amount
        receipt_date = as_date(receipt.get("receipt_date"))
        if receipt_date is None:
            continue
        if receipt_date >= month_start:
            this_month += amount
        if receipt_date >= year_start:
            this_year += amount
    return ReceiptTotals(len(receipts), round(total, 2), round(this_month, 2), round(this_year, 2))


# ----------------------------------------------------------------------
# Export
# ----------------------------------------------------------------------
def date_range(
    name: str,
    today: Optional[date] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Tuple[Optional[date], Optional[date]]:
    """Return the inclusive ``(start, end)`` bounds for a named export range.

    ``year``, ``quarter`` and ``month`` run from the start of the current
    period with no upper bound. ``custom`` uses ``start`` and ``end`` as given.
    """

    if name not in DATE_RANGES:
        raise ValidationError(f"date range must be one of: {', '.join(DATE_RANGES)}")
    today = today or date.today()
    if name == "year":
        return today.replace(month=1, day=1), None
    if name == "quarter":
        return today.replace(month=(today.month - 1) // 3 * 3 + 1, day=1), None
    if name == "month":
        return today.replace(day=1), None
    if name == "custom":
        if start is None or end is None:
            raise ValidationError("custom range needs both a start and an end date")
        if start > end:
            raise ValidationError("custom range start must not be after its end")
        return start, end
    return None, None


def filter_receipts(
    receipts: Iterable[Mapping[str, Any]],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> List[Dict[str, Any]]:
    if start is None and end is None:
        return [dict(item) for item in receipts]
    selected = []
    for receipt in receipts:
        receipt_date = as_date(receipt.get("receipt_date"))
        if receipt_date is None:
            continue
        if start is not None and receipt_date < start:
            continue
        if end is not None and receipt_date > end:
            continue
        selected.append(dict(receipt))
    return selected


def export_rows(
    receipts: Iterable[Mapping[str, Any]],
    vehicles: Sequence[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Flatten receipts into the rows written by :func:`write_export`."""

    rows = []
    for receipt in receipts:
        receipt_date = as_date(receipt.get("receipt_date"))
        rows.append(
            {
                "Date": receipt_date.isoformat() if receipt_date else str(receipt.get("receipt_date") or ""),
                "Vendor": receipt.get("vendor") or "",
                "Amount": _amount(receipt.get("amount")),
                "Category": receipt_category_label(receipt.get("category")),
                "Vehicle": vehicle_label(vehicles, receipt.get("vehicle_id")),
                "Description": receipt.get("description") or "",
            }
        )
    return rows


def default_export_filename(fmt: str, today: Optional[date] = None) -> str:
    return f"receipts_export_{(today or date.today()).isoformat()}.{fmt}"


def write_export(rows: Sequence[Mapping[str, Any]], path: Path, fmt: str) -> Path:
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"export format must be one of: {', '.join(EXPORT_FORMATS)}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "csv":
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerow(EXPORT_COLUMNS)
            for row in rows:
                writer.writerow([row.get(column, "") for column in EXPORT_COLUMNS])
    else:
        with path.open("w", encoding="utf-8") as handle:
            json.dump(list(rows), handle, indent=2, ensure_ascii=False)
    logger.info("Exported %s receipt(s) to %s", len(rows), path)
    return path


__all__ = [
    "DATE_RANGES",
    "EXPIRING_WITHIN_DAYS",
    "EXPORT_COLUMNS",
    "EXPORT_FORMATS",
    "ExpiryState",
    "ExpiryStatus",
    "ReceiptTotals",
    "as_date",
    "date_range",
    "default_export_filename",
    "expiry_alerts",
    "expiry_status",
    "export_rows",
    "filter_receipts",
    "receipt_totals",
    "vehicle_expiry",
]
