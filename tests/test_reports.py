from __future__ import annotations

import csv
import json
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.errors import ValidationError
from core.reports import (
    EXPORT_COLUMNS,
    ExpiryState,
    date_range,
    default_export_filename,
    expiry_alerts,
    expiry_status,
    export_rows,
    filter_receipts,
    receipt_totals,
    vehicle_expiry,
    write_export,
)

TODAY = date(2024, 5, 15)

VEHICLES = [
    {
        "vehicle_id": "v1",
        "make": "Honda",
        "model": "Civic",
        "year": 2019,
        "warranty_expiration": "2024-05-01",
        "insurance_expiration": "2024-06-14",
        "registration_expiration": "2025-01-31",
    },
    {"vehicle_id": "v2", "make": "Ford", "model": "F-150", "year": 2021},
]

RECEIPTS = [
    {"receipt_id": "r1", "vehicle_id": "v1", "receipt_date": "2023-12-30", "vendor": "Jiffy", "amount": 40.0,
     "category": "oil_change"},
    {"receipt_id": "r2", "vehicle_id": "v1", "receipt_date": "2024-04-02", "vendor": "Tire Co", "amount": "120.50",
     "category": "tire_service", "description": "Rotation"},
    {"receipt_id": "r3", "vehicle_id": "v9", "receipt_date": "2024-05-03T10:00:00Z", "vendor": "Parts4U",
     "amount": 9.5, "category": "parts"},
    {"receipt_id": "r4", "vehicle_id": "v2", "receipt_date": "", "vendor": "Unknown", "amount": None},
]


def test_expiry_status_classifies_dates() -> None:
    assert expiry_status("2024-05-14", TODAY).state is ExpiryState.EXPIRED
    assert expiry_status("2024-05-15", TODAY).state is ExpiryState.EXPIRING
    assert expiry_status("2024-06-14", TODAY).days_left == 30
    assert expiry_status("2024-06-14", TODAY).text == "30 days left"
    assert expiry_status("2024-06-15", TODAY).state is ExpiryState.VALID
    assert expiry_status("2024-06-15", TODAY).text == "2024-06-15"
    assert expiry_status("", TODAY).text == "Unknown"
    assert expiry_status("not a date", TODAY).state is ExpiryState.UNKNOWN


def test_vehicle_expiry_and_alerts() -> None:
    statuses = vehicle_expiry(VEHICLES[0], TODAY)

    assert statuses["warranty"].text == "Expired"
    assert statuses["insurance"].state is ExpiryState.EXPIRING
    assert statuses["registration"].state is ExpiryState.VALID

    alerts = [(vehicle["vehicle_id"], document) for vehicle, document, _ in expiry_alerts(VEHICLES, TODAY)]
    assert alerts == [("v1", "warranty"), ("v1", "insurance")]


def test_receipt_totals() -> None:
    totals = receipt_totals(RECEIPTS, TODAY)

    assert totals.count == 4
    assert totals.total == 170.0
    assert totals.this_month == 9.5
    assert totals.this_year == 130.0


@pytest.mark.parametrize(
    "name, expected",
    [
        ("all", (None, None)),
        ("year", (date(2024, 1, 1), None)),
        ("quarter", (date(2024, 4, 1), None)),
        ("month", (date(2024, 5, 1), None)),
    ],
)
def test_named_date_ranges(name, expected) -> None:
    assert date_range(name, TODAY) == expected


def test_custom_range_requires_ordered_bounds() -> None:
    assert date_range("custom", TODAY, date(2024, 1, 1), date(2024, 3, 31)) == (date(2024, 1, 1), date(2024, 3, 31))
    with pytest.raises(ValidationError):
        date_range("custom", TODAY, date(2024, 1, 1), None)
    with pytest.raises(ValidationError):
        date_range("custom", TODAY, date(2024, 3, 1), date(2024, 1, 1))
    with pytest.raises(ValidationError):
        date_range("decade", TODAY)


def test_filter_receipts_by_range() -> None:
    assert [item["receipt_id"] for item in filter_receipts(RECEIPTS)] == ["r1", "r2", "r3", "r4"]
    assert [item["receipt_id"] for item in filter_receipts(RECEIPTS, date(2024, 4, 1))] == ["r2", "r3"]
    assert [item["receipt_id"] for item in filter_receipts(RECEIPTS, date(2023, 12, 1), date(2024, 4, 2))] == [
        "r1",
        "r2",
    ]


def test_export_rows_use_labels() -> None:
    rows = export_rows(RECEIPTS[:3], VEHICLES)

    assert rows[1] == {
        "Date": "2024-04-02",
        "Vendor": "Tire Co",
        "Amount": 120.5,
        "Category": "Tire Service",
        "Vehicle": "2019 Honda Civic",
        "Description": "Rotation",
    }
    assert rows[2]["Date"] == "2024-05-03"
    assert rows[2]["Vehicle"] == "Unknown Vehicle"


def test_write_export_csv_and_json(tmp_path: Path) -> None:
    rows = export_rows(RECEIPTS[:2], VEHICLES)

    csv_path = write_export(rows, tmp_path / "out" / "receipts.csv", "csv")
    with csv_path.open(newline="", encoding="utf-8") as handle:
        parsed = list(csv.reader(handle))
    assert parsed[0] == list(EXPORT_COLUMNS)
    assert parsed[1] == ["2023-12-30", "Jiffy", "40.0", "Oil Change", "2019 Honda Civic", ""]

    json_path = write_export(rows, tmp_path / "receipts.json", "json")
    assert json.loads(json_path.read_text(encoding="utf-8")) == rows

    with pytest.raises(ValidationError):
        write_export(rows, tmp_path / "receipts.pdf", "pdf")


def test_default_export_filename() -> None:
    assert default_export_filename("json", TODAY) == "receipts_export_2024-05-15.json"
