"""Row store adapter that keeps one collection per Google Sheets worksheet."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from core.entities import CollectionSpec, FieldType
from core.timestamps import format_iso

from backend.row_store import TableRowStore
from backend.sheets_client import GoogleSheetsClient, SheetTabData

logger = logging.getLogger(__name__)

# Day zero of the spreadsheet serial date system.
_SERIAL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _from_serial(value: float) -> datetime:
    return _SERIAL_EPOCH + timedelta(days=float(value))


def parse_cell(value: Any, column_type: FieldType) -> Any:
    """Convert an unformatted cell value into the record's field value."""

    if column_type is FieldType.INTEGER:
        try:
            return int(round(float(str(value).replace(",", ""))))
        except (TypeError, ValueError):
            return value
    if column_type is FieldType.NUMBER:
        try:
            return float(str(value).replace(",", ""))
        except (TypeError, ValueError):
            return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        moment = _from_serial(value)
        if column_type is FieldType.DATE:
            return moment.date().isoformat()
        if column_type is FieldType.DATETIME:
            return format_iso(moment)
    if isinstance(value, str):
        return value
    return str(value)


def format_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return value
    return str(value)


class SheetsRowStore(TableRowStore):
    """Persist a collection as a header row plus one row per record.

    Blank cells are left out of the returned rows. Columns that exist in the
    sheet but not in the collection layout are read and written back as text.
    """

    def __init__(self, spec: CollectionSpec, client: GoogleSheetsClient) -> None:
        super().__init__(spec)
        self._client = client
        self._headers: Optional[List[str]] = None

    @property
    def title(self) -> str:
        return self.spec.sheet_title

    def ensure(self) -> None:
        if self._client.ensure_tab(self.title, self.spec.field_names):
            self._headers = list(self.spec.field_names)

    def _load(self) -> List[Dict[str, Any]]:
        tab = self._client.fetch_tab(self.title)
        self._headers = list(tab.headers)
        records: List[Dict[str, Any]] = []
        for values in tab.rows:
            record: Dict[str, Any] = {}
            for index, header in enumerate(tab.headers):
                if not header or index >= len(values) or _is_blank(values[index]):
                    continue
                record[header] = parse_cell(values[index], self.spec.field_type(header))
            if _is_blank(record.get(self.id_field)):
                continue
            record[self.id_field] = str(record[self.id_field])
            records.append(record)
        return records

    def _resolve_headers(self, rows: List[Dict[str, Any]]) -> List[str]:
        headers = [header for header in (self._headers or []) if header]
        for name in self.spec.field_names:
            if name not in headers:
                headers.append(name)
        for row in rows:
            for key in row:
                if key not in headers:
                    headers.append(key)
        return headers

    def _store(self, rows: List[Dict[str, Any]]) -> None:
        headers = self._resolve_headers(rows)
        values = [[format_cell(row.get(header)) for header in headers] for row in rows]
        self._client.write_tab(SheetTabData(title=self.title, headers=headers, rows=values))
        self._headers = headers
        logger.debug("Wrote %d rows to worksheet %s", len(rows), self.title)


__all__ = ["SheetsRowStore", "format_cell", "parse_cell"]
