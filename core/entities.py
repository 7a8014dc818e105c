"""Collection definitions for vehicles, maintenance records, receipts and reminders.

Each collection is described by a :class:`CollectionSpec` which records the
name used on the wire (``resource``), the key used in the local store, the
primary key field, the field used for incremental pulls and the typed column
layout used by tabular adapters such as Google Sheets. Both the client and the
backend resolve collections through :func:`get_collection` so the two sides
agree on ids and column order.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from core.errors import ValidationError
from core.timestamps import parse_timestamp


class FieldType(Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    INTEGER = "INTEGER"
    DATE = "DATE"
    DATETIME = "DATETIME"


MAINTENANCE_TYPE_LABELS: Mapping[str, str] = {
    "oil_change": "Oil Change",
    "tire_rotation": "Tire Rotation",
    "brake_service": "Brake Service",
    "transmission_service": "Transmission Service",
    "coolant_flush": "Coolant Flush",
    "air_filter": "Air Filter",
    "spark_plugs": "Spark Plugs",
    "battery": "Battery",
    "inspection": "Inspection",
    "repair": "Repair",
    "other": "Other",
}

RECEIPT_CATEGORY_LABELS: Mapping[str, str] = {
    "oil_change": "Oil Change",
    "tire_service": "Tire Service",
    "brake_service": "Brake Service",
    "engine_repair": "Engine Repair",
    "transmission": "Transmission",
    "inspection": "Inspection",
    "parts": "Parts",
    "other": "Other",
}

REMINDER_STATUSES: Tuple[str, ...] = ("active", "completed", "dismissed")

UNKNOWN_VEHICLE = "Unknown Vehicle"


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    resource: str
    storage_key: str
    id_field: str
    sheet_title: str
    columns: Tuple[Tuple[str, FieldType], ...]
    freshness_fields: Tuple[str, ...] = ("last_updated", "created_date")
    required: Tuple[str, ...] = ()
    choices: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def field_names(self) -> List[str]:
        return [name for name, _ in self.columns]

    def field_type(self, name: str) -> FieldType:
        for column, column_type in self.columns:
            if column == name:
                return column_type
        return FieldType.TEXT

    def freshness(self, record: Mapping[str, Any]):
        """Return the parsed timestamp used for ``since`` filtering."""

        for name in self.freshness_fields:
            parsed = parse_timestamp(record.get(name))
            if parsed is not None:
                return parsed
        return None


_STAMPS = (("created_date", FieldType.DATETIME), ("last_updated", FieldType.DATETIME))

VEHICLES = CollectionSpec(
    name="vehicles",
    resource="vehicles",
    storage_key="vehicles",
    id_field="vehicle_id",
    sheet_title="Vehicles",
    columns=(
        ("vehicle_id", FieldType.TEXT),
        ("make", FieldType.TEXT),
        ("model", FieldType.TEXT),
        ("year", FieldType.INTEGER),
        ("vin", FieldType.TEXT),
        ("license_plate", FieldType.TEXT),
        ("color", FieldType.TEXT),
        ("current_mileage", FieldType.INTEGER),
        ("purchase_date", FieldType.DATE),
        ("warranty_expiration", FieldType.DATE),
        ("insurance_expiration", FieldType.DATE),
        ("registration_expiration", FieldType.DATE),
        ("photo_url", FieldType.TEXT),
        ("notes", FieldType.TEXT),
    )
    + _STAMPS,
    freshness_fields=("last_updated",),
    required=("make", "model", "year"),
)

MAINTENANCE = CollectionSpec(
    name="maintenance",
    resource="maintenance",
    storage_key="maintenanceRecords",
    id_field="log_id",
    sheet_title="Maintenance",
    columns=(
        ("log_id", FieldType.TEXT),
        ("vehicle_id", FieldType.TEXT),
        ("maintenance_type", FieldType.TEXT),
        ("service_date", FieldType.DATE),
        ("mileage", FieldType.INTEGER),
        ("cost", FieldType.NUMBER),
        ("service_provider", FieldType.TEXT),
        ("description", FieldType.TEXT),
        ("next_service_mileage", FieldType.INTEGER),
        ("next_service_date", FieldType.DATE),
        ("receipt_id", FieldType.TEXT),
    )
    + _STAMPS,
    required=("vehicle_id", "maintenance_type", "service_date"),
    choices={"maintenance_type": tuple(MAINTENANCE_TYPE_LABELS)},
)

RECEIPTS = CollectionSpec(
    name="receipts",
    resource="receipts",
    storage_key="receipts",
    id_field="receipt_id",
    sheet_title="Receipts",
    columns=(
        ("receipt_id", FieldType.TEXT),
        ("vehicle_id", FieldType.TEXT),
        ("log_id", FieldType.TEXT),
        ("receipt_date", FieldType.DATE),
        ("vendor", FieldType.TEXT),
        ("amount", FieldType.NUMBER),
        ("category", FieldType.TEXT),
        ("description", FieldType.TEXT),
        ("image_url", FieldType.TEXT),
    )
    + _STAMPS,
    required=("vehicle_id", "receipt_date", "amount"),
    choices={"category": tuple(RECEIPT_CATEGORY_LABELS)},
)

REMINDERS = CollectionSpec(
    name="reminders",
    resource="reminders",
    storage_key="reminders",
    id_field="reminder_id",
    sheet_title="Reminders",
    columns=(
        ("reminder_id", FieldType.TEXT),
        ("vehicle_id", FieldType.TEXT),
        ("reminder_type", FieldType.TEXT),
        ("due_date", FieldType.DATE),
        ("due_mileage", FieldType.INTEGER),
        ("status", FieldType.TEXT),
        ("message", FieldType.TEXT),
    )
    + _STAMPS,
    required=("vehicle_id", "reminder_type"),
    choices={"status": REMINDER_STATUSES},
)

# Sync order: vehicles first, then the collections that reference them.
COLLECTIONS: Tuple[CollectionSpec, ...] = (VEHICLES, MAINTENANCE, RECEIPTS, REMINDERS)

_LOOKUP: Dict[str, CollectionSpec] = {}
for _spec in COLLECTIONS:
    _LOOKUP[_spec.name] = _spec
    _LOOKUP[_spec.resource] = _spec
    _LOOKUP[_spec.storage_key] = _spec


def get_collection(name: str) -> CollectionSpec:
    """Resolve a collection by name, wire resource or local storage key."""

    try:
        return _LOOKUP[name]
    except KeyError:
        raise KeyError(f"Unknown collection: {name!r}") from None


def find_collection(name: str) -> Optional[CollectionSpec]:
    return _LOOKUP.get(name)


def new_record_id() -> str:
    return uuid.uuid4().hex


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _coerce_number(name: str, value: Any, *, integer: bool) -> Any:
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be numeric")
    if isinstance(value, (int, float)):
        number = value
    else:
        text = str(value).strip().replace(",", "")
        try:
            number = float(text)
        except ValueError:
            raise ValidationError(f"{name} must be numeric, got {value!r}") from None
    if integer:
        return int(round(float(number)))
    return float(number)


def validate_record(
    spec: CollectionSpec,
    data: Mapping[str, Any],
    *,
    partial: bool = False,
) -> Dict[str, Any]:
    """Return a normalised copy of ``data`` or raise :class:`ValidationError`.

    ``partial`` validates an update patch: required fields only need to be
    non-blank when the patch actually carries them.
    """

    if not isinstance(data, Mapping):
        raise ValidationError(f"{spec.name} payload must be an object")

    record: Dict[str, Any] = dict(data)
    missing = [
        name
        for name in spec.required
        if (not partial or name in record) and _is_blank(record.get(name))
    ]
    if missing:
        raise ValidationError(f"{', '.join(missing)} is required")

    for name, column_type in spec.columns:
        if name not in record:
            continue
        if column_type is FieldType.INTEGER:
            record[name] = _coerce_number(name, record[name], integer=True)
        elif column_type is FieldType.NUMBER:
            record[name] = _coerce_number(name, record[name], integer=False)

    for name, allowed in spec.choices.items():
        value = record.get(name)
        if not _is_blank(value) and value not in allowed:
            raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return record


def vehicle_label(vehicles: Iterable[Mapping[str, Any]], vehicle_id: Optional[str]) -> str:
    """Return ``"<year> <make> <model>"`` for ``vehicle_id`` or ``Unknown Vehicle``."""

    if not vehicle_id:
        return UNKNOWN_VEHICLE
    for vehicle in vehicles:
        if vehicle.get(VEHICLES.id_field) == vehicle_id:
            parts = [str(vehicle.get(key) or "").strip() for key in ("year", "make", "model")]
            label = " ".join(part for part in parts if part)
            return label or UNKNOWN_VEHICLE
    return UNKNOWN_VEHICLE


def maintenance_type_label(value: Optional[str]) -> str:
    return MAINTENANCE_TYPE_LABELS.get(value or "", value or "")


def receipt_category_label(value: Optional[str]) -> str:
    return RECEIPT_CATEGORY_LABELS.get(value or "", value or "")


def collection_names(specs: Sequence[CollectionSpec] = COLLECTIONS) -> List[str]:
    return [spec.name for spec in specs]


__all__ = [
    "COLLECTIONS",
    "CollectionSpec",
    "FieldType",
    "MAINTENANCE",
    "MAINTENANCE_TYPE_LABELS",
    "RECEIPTS",
    "RECEIPT_CATEGORY_LABELS",
    "REMINDERS",
    "REMINDER_STATUSES",
    "UNKNOWN_VEHICLE",
    "VEHICLES",
    "collection_names",
    "find_collection",
    "get_collection",
    "maintenance_type_label",
    "new_record_id",
    "receipt_category_label",
    "validate_record",
    "vehicle_label",
]
