"""Resolve logical record fields to column positions in a record store header.

The intake sheet is edited by hand, so headers get renamed, reordered and
occasionally dropped. A SchemaMap is built once per request from the header
row and answers "which column holds field X" for the rest of that request:

- The key column (FormID) must match exactly (case-insensitive, trimmed);
  without it nothing can be looked up, so its absence raises SchemaError.
- Every other field is optional. Each lists one or more historical aliases;
  the first alias present wins. If none is present and fuzzy matching is
  enabled, the best rapidfuzz ratio against the normalized headers is used
  when it reaches the threshold. Otherwise the field resolves to None and the
  caller uses its default.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from rapidfuzz import fuzz, process

from .errors import SchemaError
from .utils import string_or_empty

LOG = logging.getLogger(__name__)

DEFAULT_KEY_COLUMN = "FormID"

DEFAULT_FIELD_ALIASES: Dict[str, List[str]] = {
    "first_name": ["First Name"],
    "last_name": ["Last Name"],
    "timestamp": ["Timestamp"],
    "pickup_window": ["Pickup Window", "Pick-up Window", "Preferred Pickup Window"],
    "additional_services": ["Additional Services"],
    "count_puppies": ["CountPuppies"],
    "count_kittens": ["CountKittens"],
}

DEFAULT_UPDATE_ALIASES: Dict[str, List[str]] = {
    "pdf_id": ["Generated PDF Id"],
    "pdf_url": ["Generated PDF URL"],
    "generated_at": ["Generated At"],
    "flea_provided": ["Flea Medication Provided"],
}


def header_key(name: Any) -> str:
    """Exact-match key: trimmed and lowercased."""
    return string_or_empty(name).lower()


def normalize(col: str) -> str:
    """Normalize formatting prior to fuzzy matching."""
    col_normalized = col.lower().strip().replace("_", " ").replace("-", " ")
    return re.sub(r"\s+", " ", col_normalized)


@dataclass(frozen=True)
class SchemaMap:
    """Header layout of one record store read.

    Attributes
    ----------
    headers : List[str]
        Trimmed header names as observed, in column order.
    key_index : int
        Column index of the business key.
    fields : Dict[str, Optional[int]]
        Logical field name to column index (None when absent).
    """

    headers: List[str]
    key_index: int
    fields: Dict[str, Optional[int]]

    def index_of(self, field_name: str) -> Optional[int]:
        return self.fields.get(field_name)

    def value(self, row: Sequence[Any], field_name: str, default: Any = "") -> Any:
        """Cell value for a logical field, or default when absent/short row."""
        index = self.index_of(field_name)
        if index is None or index >= len(row):
            return default
        cell = row[index]
        return default if cell is None else cell

    def key_value(self, row: Sequence[Any]) -> str:
        if self.key_index >= len(row):
            return ""
        return string_or_empty(row[self.key_index])


def build_header_index(headers: Sequence[Any]) -> Dict[str, int]:
    """Map exact-match header keys to their first column index."""
    index: Dict[str, int] = {}
    for position, name in enumerate(headers):
        key = header_key(name)
        if key and key not in index:
            index[key] = position
    return index


def fuzzy_match_column(
    aliases: Sequence[str],
    headers: Sequence[str],
    threshold: float,
    taken: set[int],
) -> Optional[int]:
    """Return the column whose normalized header best matches any alias.

    Uses ``process.extractOne(..., scorer=fuzz.ratio)`` per alias and keeps
    the best score at or above ``threshold``. Columns already claimed by
    another field are skipped.
    """
    if threshold <= 0:
        return None

    choices = {
        position: normalize(name)
        for position, name in enumerate(headers)
        if position not in taken and name
    }
    if not choices:
        return None

    best_index: Optional[int] = None
    best_score = 0.0
    for alias in aliases:
        match = process.extractOne(
            query=normalize(alias),
            choices=choices,
            scorer=fuzz.ratio,
            score_cutoff=threshold,
        )
        if match is None:
            continue
        _, score, position = match
        if score > best_score:
            best_score, best_index = score, position

    if best_index is not None:
        LOG.info(
            "Matched header '%s' to %s with score %.0f",
            headers[best_index],
            list(aliases),
            best_score,
        )
    return best_index


def build_schema_map(
    headers: Sequence[Any],
    key_column: str = DEFAULT_KEY_COLUMN,
    field_aliases: Optional[Mapping[str, Sequence[str]]] = None,
    fuzzy_threshold: float = 0,
) -> SchemaMap:
    """Build the SchemaMap for a header row.

    Parameters
    ----------
    headers : Sequence[Any]
        Raw header cells (row 1 of the sheet).
    key_column : str
        Name of the business key column; matched exactly (case-insensitive).
    field_aliases : Mapping[str, Sequence[str]], optional
        Logical field name to accepted header names, in priority order.
        Defaults to DEFAULT_FIELD_ALIASES.
    fuzzy_threshold : float
        rapidfuzz ratio (0-100) at or above which an unmatched optional field
        may claim a similarly named header. 0 disables fuzzy matching.

    Returns
    -------
    SchemaMap

    Raises
    ------
    SchemaError
        If the key column is absent; the message lists the observed headers.
    """
    if field_aliases is None:
        field_aliases = DEFAULT_FIELD_ALIASES

    cleaned = [string_or_empty(h) for h in headers]
    exact = build_header_index(cleaned)

    key_index = exact.get(header_key(key_column))
    if key_index is None:
        raise SchemaError(
            f"{key_column} column not found. Headers seen: {', '.join(cleaned)}"
        )

    taken = {key_index}
    fields: Dict[str, Optional[int]] = {}
    unresolved: List[str] = []

    for field_name, aliases in field_aliases.items():
        position = next(
            (exact[header_key(alias)] for alias in aliases if header_key(alias) in exact),
            None,
        )
        fields[field_name] = position
        if position is None:
            unresolved.append(field_name)
        else:
            taken.add(position)

    for field_name in unresolved:
        position = fuzzy_match_column(
            field_aliases[field_name], cleaned, fuzzy_threshold, taken
        )
        if position is not None:
            fields[field_name] = position
            taken.add(position)
        else:
            LOG.debug("Optional column for '%s' not present", field_name)

    return SchemaMap(headers=cleaned, key_index=key_index, fields=fields)
