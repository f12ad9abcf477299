"""Record Resolver: look up and update Intake Records by Form ID.

**Lookup contract:**
- Form ID must be exactly 12 digits (ValidationError otherwise, before any
  record store call).
- The header row is resolved into a SchemaMap per call; only the FormID
  column is required (SchemaError lists the headers seen when it is absent).
- The first row whose FormID cell equals the Form ID exactly is normalized
  into an IntakeRecord; no partial or fuzzy matching on values.
- A missing record is a normal outcome: lookup_record returns None.

**Update contract (after labels are generated):**
- Writes the merged document id and URL, a UTC generation timestamp and the
  operator-asserted flea-medication flag into whichever of those columns the
  sheet has. Columns that do not exist are skipped; if none exist the update
  is rejected.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from .column_mapper import (
    DEFAULT_FIELD_ALIASES,
    DEFAULT_KEY_COLUMN,
    DEFAULT_UPDATE_ALIASES,
    SchemaMap,
    build_schema_map,
)
from .data_models import PUPPY_KITTEN_ALERT, IntakeRecord, RecordUpdateResult
from .errors import NotFoundError, ValidationError
from .record_store import RecordStore
from .utils import a1_address, string_or_empty, to_count, validate_form_id

LOG = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 90

# "12:30", "9:05 PM", "14:35:10"; pandas would date these with today
TIME_ONLY_PATTERN = re.compile(r"\d{1,2}:\d{2}(:\d{2}(\.\d+)?)?(\s*[AaPp]\.?[Mm]\.?)?")


@dataclass(frozen=True)
class RecordSettings:
    """Column layout expectations for the intake sheet."""

    key_column: str = DEFAULT_KEY_COLUMN
    field_aliases: Mapping[str, Sequence[str]] = field(
        default_factory=lambda: dict(DEFAULT_FIELD_ALIASES)
    )
    update_aliases: Mapping[str, Sequence[str]] = field(
        default_factory=lambda: dict(DEFAULT_UPDATE_ALIASES)
    )
    fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RecordSettings":
        record_config = config.get("record_store", {})
        return cls(
            key_column=record_config.get("key_column", DEFAULT_KEY_COLUMN),
            field_aliases=record_config.get("columns", DEFAULT_FIELD_ALIASES),
            update_aliases=record_config.get("update_columns", DEFAULT_UPDATE_ALIASES),
            fuzzy_threshold=record_config.get("fuzzy_header_threshold", DEFAULT_FUZZY_THRESHOLD),
        )


def parse_date_requested(raw: Any) -> str:
    """Best-effort ``YYYY-MM-DD`` from a submission timestamp. Never raises.

    Order of attempts:
    1. native ``date``/``datetime`` values;
    2. general date parsing of the text (pandas.to_datetime), converted to
       UTC when the text carries an offset; time-only text is not parsed;
    3. the text before the first space;
    4. empty string.
    """
    if isinstance(raw, datetime):
        if raw.tzinfo is not None:
            raw = raw.astimezone(timezone.utc)
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()

    text = string_or_empty(raw)
    if not text:
        return ""

    if isinstance(raw, str) and not TIME_ONLY_PATTERN.fullmatch(text):
        try:
            parsed = pd.to_datetime(text, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            parsed = pd.NaT
        if not pd.isna(parsed):
            if parsed.tzinfo is not None:
                parsed = parsed.tz_convert("UTC")
            return parsed.strftime("%Y-%m-%d")

    return text.split(" ")[0]


def parse_services(raw: Any) -> List[str]:
    """Split a comma-separated services cell into trimmed, non-empty tags."""
    return [part.strip() for part in string_or_empty(raw).split(",") if part.strip()]


def build_alerts(count_puppies: int, count_kittens: int) -> List[str]:
    if count_puppies + count_kittens > 0:
        return [PUPPY_KITTEN_ALERT]
    return []


def normalize_row(row: Sequence[Any], schema: SchemaMap, row_number: int) -> IntakeRecord:
    """Convert one raw row into an IntakeRecord using the schema map."""
    services = parse_services(schema.value(row, "additional_services"))
    count_puppies = to_count(schema.value(row, "count_puppies", 0))
    count_kittens = to_count(schema.value(row, "count_kittens", 0))

    return IntakeRecord(
        form_id=schema.key_value(row),
        first_name=string_or_empty(schema.value(row, "first_name")),
        last_name=string_or_empty(schema.value(row, "last_name")),
        pickup_window=string_or_empty(schema.value(row, "pickup_window")),
        date_requested=parse_date_requested(schema.value(row, "timestamp")),
        additional_services=services,
        flea_requested=any("flea" in service.lower() for service in services),
        count_puppies=count_puppies,
        count_kittens=count_kittens,
        alerts=build_alerts(count_puppies, count_kittens),
        row_number=row_number,
    )


def find_row(
    data_rows: Sequence[Sequence[Any]], schema: SchemaMap, form_id: str
) -> Optional[int]:
    """Return the 1-based sheet row of the first exact key match, else None."""
    for offset, row in enumerate(data_rows):
        if schema.key_value(row) == form_id:
            return offset + 2
    return None


def lookup_record(
    store: RecordStore,
    form_id: Any,
    settings: Optional[RecordSettings] = None,
) -> Optional[IntakeRecord]:
    """Find and normalize the Intake Record for a Form ID.

    Parameters
    ----------
    store : RecordStore
        Record store to read.
    form_id : Any
        Scanned or typed Form ID; must be 12 digits.
    settings : RecordSettings, optional
        Column expectations; defaults to RecordSettings().

    Returns
    -------
    IntakeRecord | None
        The normalized record, or None when the Form ID is not present (or
        the sheet has no data rows).

    Raises
    ------
    ValidationError
        If the Form ID is malformed.
    SchemaError
        If the FormID column is missing.
    UpstreamError
        If the record store cannot be read.
    """
    form_id = validate_form_id(form_id)
    settings = settings or RecordSettings()

    rows = store.read_grid()
    if len(rows) < 2:
        LOG.info("Record store has no data rows")
        return None

    schema = build_schema_map(
        rows[0],
        key_column=settings.key_column,
        field_aliases=settings.field_aliases,
        fuzzy_threshold=settings.fuzzy_threshold,
    )
    data_rows = rows[1:]
    row_number = find_row(data_rows, schema, form_id)
    if row_number is None:
        LOG.info("No record for Form ID %s", form_id)
        return None

    record = normalize_row(data_rows[row_number - 2], schema, row_number)
    LOG.info("Found Form ID %s at row %s", form_id, row_number)
    return record


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a 'Z' suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def update_after_generate(
    store: RecordStore,
    form_id: Any,
    pdf_id: Any,
    pdf_url: Any,
    flea_provided: bool,
    settings: Optional[RecordSettings] = None,
    now: Optional[datetime] = None,
) -> RecordUpdateResult:
    """Write the generated document's details back to the intake row.

    Parameters
    ----------
    store : RecordStore
        Record store to update.
    form_id : Any
        Form ID of the row to update (12 digits).
    pdf_id, pdf_url : Any
        Merged document id and URL; at least one must be present.
    flea_provided : bool
        Operator-asserted flag, written as ``TRUE``/``FALSE``.
    settings : RecordSettings, optional
        Column expectations; defaults to RecordSettings().
    now : datetime, optional
        Generation timestamp (defaults to the current UTC time).

    Returns
    -------
    RecordUpdateResult

    Raises
    ------
    ValidationError
        If the Form ID is malformed, no PDF data is given, or the sheet has
        none of the write-back columns.
    SchemaError
        If the FormID column is missing.
    NotFoundError
        If no row has the Form ID.
    UpstreamError
        If the record store cannot be read or written.
    """
    form_id = validate_form_id(form_id)
    pdf_id = string_or_empty(pdf_id)
    pdf_url = string_or_empty(pdf_url)
    if not pdf_id and not pdf_url:
        raise ValidationError("Missing PDF data (pdfId or pdfUrl required).")
    settings = settings or RecordSettings()

    rows = store.read_grid()
    headers = rows[0] if rows else []
    schema = build_schema_map(
        headers,
        key_column=settings.key_column,
        field_aliases=settings.update_aliases,
        fuzzy_threshold=0,
    )
    row_number = find_row(rows[1:], schema, form_id)
    if row_number is None:
        raise NotFoundError(f"FormID {form_id} not found.")

    values = {
        "pdf_id": pdf_id,
        "pdf_url": pdf_url,
        "generated_at": utc_timestamp(now),
        "flea_provided": "TRUE" if flea_provided else "FALSE",
    }
    title = store.sheet_title()
    updates = [
        (a1_address(title, schema.index_of(name), row_number), value)
        for name, value in values.items()
        if schema.index_of(name) is not None
    ]
    if not updates:
        raise ValidationError("No matching columns found to update.")

    store.write_cells(updates)
    LOG.info("Updated row %s for FormID %s (%s column(s))", row_number, form_id, len(updates))
    return RecordUpdateResult(updated_row=row_number, columns=len(updates))
