"""Google Sheets client helpers with A1 range handling.

The client is the only module that talks to the Sheets API. It reads and
rewrites whole worksheet tabs; the row store built on top of it decides what
goes into each cell. All public entry points raise subclasses of
:class:`SheetsClientError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableSequence, Optional, Sequence

from googleapiclient.errors import HttpError

from backend.google_credentials import (
    SHEETS_SCOPES,
    CredentialsFileInvalidError,
    build_service,
)

logger = logging.getLogger(__name__)


@dataclass
class SheetTabData:
    """Container holding the raw values for a worksheet tab."""

    title: str
    headers: List[str]
    rows: List[List[Any]] = field(default_factory=list)


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsCredentialsError(SheetsClientError):
    """Raised when the provided credential file is invalid or missing."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""


def _normalise_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise SheetsClientError("Worksheet title must not be empty.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def _column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def a1_headers_range(title: str, *, columns: int) -> str:
    """Return an A1 range covering the header row for ``title``."""

    return f"{_normalise_title(title)}!A1:{_column_letter(max(1, columns))}1"


def a1_full_column_range(title: str, *, columns: int = 26) -> str:
    """Return an A1 range spanning all rows for ``columns`` columns."""

    return f"{_normalise_title(title)}!A1:{_column_letter(max(1, columns))}"


def _build_service(path: Path):
    try:
        return build_service("sheets", "v4", path, SHEETS_SCOPES)
    except CredentialsFileInvalidError as exc:
        raise SheetsCredentialsError(str(exc)) from exc
    except Exception as exc:  # pragma: no cover - HTTP / auth error guard
        raise SheetsApiResponseError(str(exc)) from exc


class GoogleSheetsClient:
    """Concrete helper that speaks to Google Sheets using the REST API."""

    def __init__(
        self,
        spreadsheet_id: str,
        credential_path: Optional[Path] = None,
        *,
        service=None,
        columns: int = 52,
    ) -> None:
        if not spreadsheet_id:
            raise SheetsClientError("A spreadsheet id is required.")
        self._spreadsheet_id = spreadsheet_id
        self._columns = columns
        if service is None:
            if credential_path is None:
                raise SheetsCredentialsError("A service account credential file is required.")
            service = _build_service(Path(credential_path))
        self._service = service

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    def _execute(self, request) -> Mapping[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as exc:
            raise SheetsApiResponseError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def health_check(self) -> None:
        """Perform a lightweight check to confirm the spreadsheet is reachable."""

        self._execute(
            self._service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                includeGridData=False,
                ranges=[],
            )
        )

    def tab_titles(self) -> List[str]:
        response = self._execute(
            self._service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                fields="sheets.properties.title",
            )
        )
        sheets: Sequence[Mapping[str, Any]] = response.get("sheets", [])  # type: ignore[assignment]
        return [str(sheet.get("properties", {}).get("title", "")) for sheet in sheets]

    def ensure_tab(self, title: str, headers: Sequence[str]) -> bool:
        """Create ``title`` with a header row when it does not exist yet.

        Returns ``True`` when the tab was created.
        """

        if title in self.tab_titles():
            return False
        body = {"requests": [{"addSheet": {"properties": {"title": title}}}]}
        self._execute(
            self._service.spreadsheets().batchUpdate(spreadsheetId=self._spreadsheet_id, body=body)
        )
        self.write_tab(SheetTabData(title=title, headers=list(headers)))
        logger.info("Created worksheet %s", title)
        return True

    def fetch_tab(self, title: str) -> SheetTabData:
        """Return the header row and data rows of ``title``.

        Cells are read unformatted so numbers come back as numbers.
        """

        response = self._execute(
            self._service.spreadsheets()
            .values()
            .get(
                spreadsheetId=self._spreadsheet_id,
                range=a1_full_column_range(title, columns=self._columns),
                majorDimension="ROWS",
                valueRenderOption="UNFORMATTED_VALUE",
            )
        )
        values: List[List[Any]] = [list(row) for row in response.get("values", [])]  # type: ignore[union-attr]
        if not values:
            return SheetTabData(title=title, headers=[], rows=[])
        headers = [str(cell).strip() for cell in values[0]]
        return SheetTabData(title=title, headers=headers, rows=values[1:])

    def write_tab(self, tab: SheetTabData) -> None:
        """Replace the full contents of ``tab.title`` with ``tab``."""

        column_count = max([len(tab.headers)] + [len(row) for row in tab.rows]) or 1
        self._execute(
            self._service.spreadsheets()
            .values()
            .clear(
                spreadsheetId=self._spreadsheet_id,
                range=a1_full_column_range(tab.title, columns=max(column_count, self._columns)),
                body={},
            )
        )
        all_rows: List[List[Any]] = [list(tab.headers)]
        all_rows.extend(list(row) for row in tab.rows)
        body: Dict[str, Any] = {
            "range": a1_full_column_range(tab.title, columns=column_count),
            "values": all_rows,
            "majorDimension": "ROWS",
        }
        self._execute(
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=self._spreadsheet_id,
                range=body["range"],
                valueInputOption="RAW",
                body=body,
            )
        )


__all__ = [
    "GoogleSheetsClient",
    "SheetTabData",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsCredentialsError",
    "a1_full_column_range",
    "a1_headers_range",
]
