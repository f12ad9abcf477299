"""Unified data models for the fulfillment service.

This module provides the core dataclasses passed between the record
resolver, the label renderer, the archive and merge clients and the
fulfillment pipeline. Each model knows how to present itself in the
camelCase JSON shape the HTTP API returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .enums import PipelineStage

PUPPY_KITTEN_ALERT = "PUPPY/KITTEN ALERT! Did you check for Puppy/Kitten food?"


@dataclass(frozen=True)
class IntakeRecord:
    """One client's pantry request, normalized from a record store row.

    Fields
    ------
    form_id : str
        12-digit business key, unique across the record store.
    first_name, last_name : str
        Display strings; empty when the column is absent or blank.
    pickup_window : str
        Free-text schedule string.
    date_requested : str
        Best-effort ``YYYY-MM-DD`` derived from the submission timestamp,
        or whatever could be salvaged from the raw text (may be empty).
    additional_services : List[str]
        Trimmed, non-empty service tags.
    flea_requested : bool
        True when any service tag mentions "flea" (case-insensitive).
    count_puppies, count_kittens : int
        Non-negative counts, 0 when absent or unparseable.
    alerts : List[str]
        Warnings for the operator; contains PUPPY_KITTEN_ALERT iff
        ``count_puppies + count_kittens > 0``.
    row_number : int
        1-based row in the record store (header is row 1).
    """

    form_id: str
    first_name: str = ""
    last_name: str = ""
    pickup_window: str = ""
    date_requested: str = ""
    additional_services: List[str] = field(default_factory=list)
    flea_requested: bool = False
    count_puppies: int = 0
    count_kittens: int = 0
    alerts: List[str] = field(default_factory=list)
    row_number: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formId": self.form_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "pickupWindow": self.pickup_window,
            "dateRequested": self.date_requested,
            "additionalServices": list(self.additional_services),
            "fleaRequested": self.flea_requested,
            "countPuppies": self.count_puppies,
            "countKittens": self.count_kittens,
            "alerts": list(self.alerts),
        }


@dataclass(frozen=True)
class LabelRequest:
    """Validated input of one fulfillment run; never persisted."""

    form_id: str
    count: int
    first_name: str = ""
    last_name: str = ""
    pickup_window: str = ""
    flea_provided: bool = False


@dataclass(frozen=True)
class LabelParams:
    """Everything drawn on one bag label.

    Parameters
    ----------
    form_id : str
        Encoded in the barcode; the only element binding the label to the record.
    first_name, last_name, pickup_window : str
        Client display fields.
    date_text : str
        Preparation date as printed (locale formatted).
    index, total : int
        "Item/Bag: index of total".
    """

    form_id: str
    first_name: str
    last_name: str
    pickup_window: str
    date_text: str
    index: int
    total: int


@dataclass(frozen=True)
class StoredDocument:
    """A document held by the archive store."""

    id: str
    url: str
    name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "url": self.url}


@dataclass(frozen=True)
class LabelResult:
    """Outcome of rendering and archiving one label; never an exception."""

    index: int
    total: int
    ok: bool
    document: Optional[StoredDocument] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RecordUpdateResult:
    """Outcome of writing fulfillment metadata back to the record store.

    Attributes
    ----------
    updated_row : int
        1-based record store row that was written.
    columns : int
        Number of cells written (only columns present in the sheet are written).
    """

    updated_row: int
    columns: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": True, "updatedRow": self.updated_row, "columns": self.columns}


@dataclass(frozen=True)
class FulfillmentResult:
    """Response of a completed fulfillment run.

    ``count`` is the number of labels that actually made it into the merged
    document, so a partial success is distinguishable from a full one.
    """

    count: int
    merged: StoredDocument
    record_updated: bool
    failed_labels: List[int] = field(default_factory=list)
    stage: PipelineStage = PipelineStage.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": True,
            "count": self.count,
            "merged": self.merged.to_dict(),
            "recordUpdated": self.record_updated,
        }
        if self.failed_labels:
            payload["failedLabels"] = list(self.failed_labels)
        return payload
