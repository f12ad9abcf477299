"""Record Store Client: the tabular source of truth holding Intake Records.

The production store is one tab of a Google Sheets spreadsheet, read and
written through the Sheets v4 REST API with an authorized ``requests``
session. The grid is returned as-is (header row followed by data rows);
interpreting columns is the job of column_mapper and records.

**Contract:**
- ``read_grid()`` returns the full grid, header row first. Rows may be
  shorter than the header (trailing blank cells are omitted by the API).
- ``write_cells(updates)`` writes a batch of ``(a1_address, value)`` pairs.
- ``sheet_title()`` returns the tab title used in A1 addresses.
- Any transport or HTTP failure is raised as UpstreamError; no retries.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests

from .errors import SchemaError, UpstreamError

LOG = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"

CellUpdate = Tuple[str, Any]


class RecordStore:
    """Interface shared by the Sheets client and the in-memory store."""

    def sheet_title(self) -> str:
        raise NotImplementedError

    def read_grid(self) -> List[List[Any]]:
        raise NotImplementedError

    def write_cells(self, updates: Sequence[CellUpdate]) -> None:
        raise NotImplementedError


class SheetsRecordStore(RecordStore):
    """Google Sheets backed record store.

    Parameters
    ----------
    session : requests.Session
        Authorized session (see credentials.CredentialProvider).
    spreadsheet_id : str
        Spreadsheet holding the intake responses.
    sheet_gid : int, optional
        Numeric tab id; resolved to a title through the spreadsheet metadata.
    sheet_title : str, optional
        Tab title; when given, no metadata lookup is made.
    timeout : float
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        session: requests.Session,
        spreadsheet_id: str,
        sheet_gid: Optional[int] = None,
        sheet_title: Optional[str] = None,
        timeout: float = 60,
    ):
        if sheet_gid is None and not sheet_title:
            raise ValueError("Either sheet_gid or sheet_title must be provided")
        self.session = session
        self.spreadsheet_id = spreadsheet_id
        self.sheet_gid = sheet_gid
        self._title = sheet_title or None
        self.timeout = timeout

    @classmethod
    def from_config(cls, session: requests.Session, config: Dict[str, Any]) -> "SheetsRecordStore":
        record_config = config.get("record_store", {})
        return cls(
            session,
            spreadsheet_id=record_config["spreadsheet_id"],
            sheet_gid=record_config.get("sheet_gid"),
            sheet_title=record_config.get("sheet_title"),
            timeout=config.get("http", {}).get("timeout_seconds", 60),
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise UpstreamError(f"Record store request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"Record store returned invalid JSON: {exc}") from exc

    def sheet_title(self) -> str:
        """Resolve (once) the tab title for the configured gid."""
        if self._title:
            return self._title

        meta = self._request(
            "GET",
            f"{SHEETS_API}/{self.spreadsheet_id}",
            params={"fields": "sheets(properties(sheetId,title))"},
        )
        for sheet in meta.get("sheets", []):
            properties = sheet.get("properties", {})
            if properties.get("sheetId") == self.sheet_gid:
                self._title = properties.get("title", "")
                LOG.info("Resolved sheet gid %s to tab '%s'", self.sheet_gid, self._title)
                return self._title

        raise SchemaError(f"No sheet/tab found for gid {self.sheet_gid}")

    def read_grid(self) -> List[List[Any]]:
        title = self.sheet_title()
        range_name = quote(f"'{title}'", safe="")
        payload = self._request(
            "GET",
            f"{SHEETS_API}/{self.spreadsheet_id}/values/{range_name}",
            params={
                "valueRenderOption": "UNFORMATTED_VALUE",
                "dateTimeRenderOption": "FORMATTED_STRING",
            },
        )
        rows = payload.get("values", [])
        LOG.info("Read %s row(s) from '%s'", len(rows), title)
        return rows

    def write_cells(self, updates: Sequence[CellUpdate]) -> None:
        if not updates:
            return
        self._request(
            "POST",
            f"{SHEETS_API}/{self.spreadsheet_id}/values:batchUpdate",
            json={
                "valueInputOption": "USER_ENTERED",
                "data": [{"range": address, "values": [[value]]} for address, value in updates],
            },
        )
        LOG.info("Wrote %s cell(s) to spreadsheet %s", len(updates), self.spreadsheet_id)


class InMemoryRecordStore(RecordStore):
    """Grid held in memory; used for tests and offline dry runs.

    Only addresses of the form ``'<title>'!<COL><ROW>`` are accepted, which
    is what records.update_after_generate produces.
    """

    def __init__(self, grid: List[List[Any]], title: str = "Form Responses 1"):
        self.grid = [list(row) for row in grid]
        self.title = title
        self.writes: List[CellUpdate] = []

    def sheet_title(self) -> str:
        return self.title

    def read_grid(self) -> List[List[Any]]:
        return copy.deepcopy(self.grid)

    def write_cells(self, updates: Sequence[CellUpdate]) -> None:
        for address, value in updates:
            row_number, column_index = _parse_a1(address)
            while len(self.grid) < row_number:
                self.grid.append([])
            row = self.grid[row_number - 1]
            while len(row) <= column_index:
                row.append("")
            row[column_index] = value
            self.writes.append((address, value))


def _parse_a1(address: str) -> Tuple[int, int]:
    """Split ``'Tab'!AB12`` into (row_number, zero-based column index)."""
    cell = address.rsplit("!", 1)[-1]
    letters = "".join(ch for ch in cell if ch.isalpha())
    digits = "".join(ch for ch in cell if ch.isdigit())
    if not letters or not digits:
        raise ValueError(f"Unsupported cell address: {address}")
    column = 0
    for ch in letters.upper():
        column = column * 26 + (ord(ch) - 64)
    return int(digits), column - 1
