"""Error taxonomy for the fulfillment service.

Every error carries the HTTP-equivalent status code the API layer reports,
and optionally the pipeline stage it was raised from.

- ValidationError: malformed input, never retried (400)
- NotFoundError: no record for the key; a normal outcome, not a crash (404)
- SchemaError: record store layout is unexpected; needs an operator fix (500)
- UpstreamError: archive, merge or record store call failed (500)
- ConfigurationError: credentials or configuration unusable at first use (500)

A PartialFailure is not an exception: it records labels that failed while
the run as a whole succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .enums import PipelineStage


class FulfillmentError(Exception):
    """Base class for errors surfaced to callers as ``{ok: false, error}``."""

    status_code = 500

    def __init__(self, message: str, stage: Optional["PipelineStage"] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage


class ValidationError(FulfillmentError, ValueError):
    status_code = 400


class NotFoundError(FulfillmentError, LookupError):
    status_code = 404


class SchemaError(FulfillmentError):
    """Record store layout does not match expectations."""


class UpstreamError(FulfillmentError, RuntimeError):
    """A collaborator call (archive, merge, record store, image fetch) failed."""


class ConfigurationError(FulfillmentError, RuntimeError):
    pass


@dataclass(frozen=True)
class PartialFailure:
    """Labels that failed inside an otherwise successful run.

    Attributes
    ----------
    failed_indexes : List[int]
        1-based bag indexes that could not be rendered or archived.
    errors : List[str]
        Error message for each failed index, in the same order.
    """

    failed_indexes: List[int]
    errors: List[str]

    def __str__(self) -> str:
        details = "; ".join(
            f"label {index}: {error}"
            for index, error in zip(self.failed_indexes, self.errors)
        )
        return f"{len(self.failed_indexes)} label(s) failed ({details})"
