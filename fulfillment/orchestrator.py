"""Fulfillment Pipeline: labels -> merge -> archive -> record update.

One run moves strictly forward through the stages in ``PipelineStage``::

    VALIDATED -> RENDERING -> MERGING -> UPLOADING -> RECORD_UPDATING -> COMPLETED

**Error Handling Philosophy:**

- **Validation** fails fast with ValidationError (400) before any network call.
  An unusable merged filename template fails with ConfigurationError (500)
  before any label is rendered.
- **Rendering** uses per-item recovery: each label that cannot be rendered or
  archived is logged and skipped. The run continues as long as at least one
  label succeeded; with zero successes it fails with "No labels generated.".
- **Merging** and **Uploading** fail fast with UpstreamError carrying the
  stage. Nothing is rolled back; per-label documents stay in the archive
  unless ``pipeline.cleanup_labels_on_merge_failure`` is enabled.
- **Cleanup** of per-label documents is best effort; each failed delete is
  logged and ignored.
- **Record updating** never fails the run. Any error is logged and reported
  as ``record_updated=False``.

Runs for the same Form ID are serialized inside one process by a keyed lock;
runs for different Form IDs never contend.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import requests

from . import records
from .archive import PDF_MIME_TYPE, ArchiveStore, DriveArchive
from .credentials import CredentialProvider
from .data_models import FulfillmentResult, LabelParams, LabelRequest, LabelResult
from .enums import PipelineStage
from .errors import (
    ConfigurationError,
    FulfillmentError,
    PartialFailure,
    UpstreamError,
    ValidationError,
)
from .merge_client import MergeClient, build_merge_client
from .record_store import RecordStore, SheetsRecordStore
from .render_labels import ImageFetcher, LabelRenderer, LabelSettings, format_prepared_date
from .utils import (
    MAX_LABEL_COUNT,
    safe_filename_part,
    string_or_empty,
    to_bool,
    validate_and_format_template,
    validate_count,
    validate_form_id,
)

LOG = logging.getLogger(__name__)

DEFAULT_MERGED_TEMPLATE = "{prefix}_{last_name}_{form_id}_{epoch_millis}.pdf"
MERGED_FILENAME_FIELDS = {"prefix", "last_name", "first_name", "form_id", "epoch_millis"}


@dataclass(frozen=True)
class PipelineSettings:
    """Pipeline behavior switches (pipeline, labels and archive sections)."""

    artifact_prefix: str = "BagLabels"
    merged_filename_template: str = DEFAULT_MERGED_TEMPLATE
    merged_folder_id: Optional[str] = None
    max_count: int = MAX_LABEL_COUNT
    render_concurrency: int = 1
    cleanup_labels_on_merge_failure: bool = False
    serialize_per_form_id: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        pipeline = config.get("pipeline", {})
        labels = config.get("labels", {})
        return cls(
            artifact_prefix=pipeline.get("artifact_prefix", "BagLabels"),
            merged_filename_template=pipeline.get(
                "merged_filename_template", DEFAULT_MERGED_TEMPLATE
            ),
            merged_folder_id=config.get("archive", {}).get("merged_folder_id"),
            max_count=labels.get("max_count", MAX_LABEL_COUNT),
            render_concurrency=labels.get("render_concurrency", 1),
            cleanup_labels_on_merge_failure=pipeline.get(
                "cleanup_labels_on_merge_failure", False
            ),
            serialize_per_form_id=pipeline.get("serialize_per_form_id", True),
        )


class KeyedLock:
    """Per-key mutual exclusion; entries are dropped once no run holds them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, List[Any]] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FulfillmentServices:
    """Collaborators of one service instance, passed explicitly to each run.

    Attributes
    ----------
    record_store : RecordStore
        Source of truth for Intake Records.
    archive : ArchiveStore
        Store for per-label and merged documents.
    merge_client : MergeClient
        Concatenates label documents.
    renderer : LabelRenderer
        Draws and archives single labels.
    record_settings : records.RecordSettings
        Column expectations for lookup and write-back.
    settings : PipelineSettings
        Pipeline switches.
    locks : KeyedLock
        Per-Form-ID lock registry shared by all runs of this instance.
    clock : Callable[[], datetime]
        Source of the current time (UTC).
    """

    record_store: RecordStore
    archive: ArchiveStore
    merge_client: MergeClient
    renderer: LabelRenderer
    record_settings: records.RecordSettings = field(default_factory=records.RecordSettings)
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    locks: KeyedLock = field(default_factory=KeyedLock)
    clock: Callable[[], datetime] = _utc_now

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        credentials: Optional[CredentialProvider] = None,
    ) -> "FulfillmentServices":
        """Build the Google-backed services described by the configuration.

        Raises
        ------
        ConfigurationError
            If the service-account credentials are missing or invalid.
        """
        credentials = credentials or CredentialProvider.from_config(config)
        session = credentials.session()
        timeout = config.get("http", {}).get("timeout_seconds", 60)

        archive = DriveArchive(session, timeout=timeout)
        label_settings = LabelSettings.from_config(config)
        renderer = LabelRenderer(
            archive=archive,
            fetcher=ImageFetcher(requests.Session(), timeout=timeout),
            settings=label_settings,
        )
        return cls(
            record_store=SheetsRecordStore.from_config(session, config),
            archive=archive,
            merge_client=build_merge_client(config, session=requests.Session()),
            renderer=renderer,
            record_settings=records.RecordSettings.from_config(config),
            settings=PipelineSettings.from_config(config),
        )


def build_label_request(
    form_id: Any,
    count: Any,
    first_name: Any = "",
    last_name: Any = "",
    pickup_window: Any = "",
    flea_provided: Any = False,
    max_count: int = MAX_LABEL_COUNT,
) -> LabelRequest:
    """Validate raw request fields into a LabelRequest.

    Raises
    ------
    ValidationError
        If the Form ID is not 12 digits or the count is not an integer in
        1..max_count. The error carries stage VALIDATED.
    """
    try:
        return LabelRequest(
            form_id=validate_form_id(form_id),
            count=validate_count(count, max_count),
            first_name=string_or_empty(first_name),
            last_name=string_or_empty(last_name),
            pickup_window=string_or_empty(pickup_window),
            flea_provided=to_bool(flea_provided),
        )
    except ValidationError as exc:
        raise ValidationError(exc.message, stage=PipelineStage.VALIDATED) from None


def merged_filename(request: LabelRequest, settings: PipelineSettings, now: datetime) -> str:
    """Archive name of the merged document, e.g. BagLabels_Bantin_123456789012_1760000000000.pdf."""
    context = {
        "prefix": settings.artifact_prefix,
        "last_name": safe_filename_part(request.last_name, "Last"),
        "first_name": safe_filename_part(request.first_name, "First"),
        "form_id": request.form_id,
        "epoch_millis": int(now.timestamp() * 1000),
    }
    return validate_and_format_template(
        settings.merged_filename_template, context, allowed_fields=MERGED_FILENAME_FIELDS
    )


def build_label_params(request: LabelRequest, date_text: str) -> List[LabelParams]:
    return [
        LabelParams(
            form_id=request.form_id,
            first_name=request.first_name,
            last_name=request.last_name,
            pickup_window=request.pickup_window,
            date_text=date_text,
            index=index,
            total=request.count,
        )
        for index in range(1, request.count + 1)
    ]


def render_all(
    params: Sequence[LabelParams], renderer: LabelRenderer, concurrency: int = 1
) -> List[LabelResult]:
    """Render every label; results come back ordered by bag index.

    With concurrency above 1, labels render on a thread pool and are collected
    in completion order before sorting.
    """
    if concurrency > 1 and len(params) > 1:
        with ThreadPoolExecutor(max_workers=min(concurrency, len(params))) as pool:
            futures = [pool.submit(renderer.generate_and_upload_label, item) for item in params]
            results = [future.result() for future in as_completed(futures)]
    else:
        results = [renderer.generate_and_upload_label(item) for item in params]
    return sorted(results, key=lambda result: result.index)


def cleanup_documents(archive: ArchiveStore, document_ids: Sequence[str]) -> List[str]:
    """Delete documents best effort; returns the ids that were deleted."""
    deleted = []
    for file_id in document_ids:
        try:
            archive.delete(file_id)
        except FulfillmentError as exc:
            LOG.warning("Failed to delete intermediate document %s: %s", file_id, exc.message)
            continue
        deleted.append(file_id)
    LOG.info("Cleaned up %s/%s intermediate document(s)", len(deleted), len(document_ids))
    return deleted


def run_fulfillment(
    request: LabelRequest,
    services: FulfillmentServices,
) -> FulfillmentResult:
    """Run one fulfillment for a validated LabelRequest.

    Parameters
    ----------
    request : LabelRequest
        Output of build_label_request.
    services : FulfillmentServices
        Collaborators for this run.

    Returns
    -------
    FulfillmentResult
        ``count`` is the number of labels in the merged document;
        ``failed_labels`` lists bag indexes that were skipped.

    Raises
    ------
    UpstreamError
        If no label could be generated (stage RENDERING), the merge failed
        (stage MERGING) or the merged document could not be archived (stage
        UPLOADING).
    """
    if services.settings.serialize_per_form_id:
        guard = services.locks.hold(request.form_id)
    else:
        guard = contextlib.nullcontext()
    with guard:
        return _run_locked(request, services)


def _run_locked(request: LabelRequest, services: FulfillmentServices) -> FulfillmentResult:
    settings = services.settings
    now = services.clock()
    run_start = time.perf_counter()
    LOG.info(
        "Fulfillment for Form ID %s started (%s label(s), stage %s)",
        request.form_id,
        request.count,
        PipelineStage.VALIDATED.value,
    )

    # Merged name; fails before any label is archived
    try:
        name = merged_filename(request, settings, now)
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid merged filename template: {exc}", stage=PipelineStage.VALIDATED
        ) from exc

    # Rendering
    stage_start = time.perf_counter()
    date_text = format_prepared_date(now.astimezone().date(), services.renderer.settings)
    results = render_all(
        build_label_params(request, date_text), services.renderer, settings.render_concurrency
    )
    succeeded = [result for result in results if result.ok]
    failed = [result for result in results if not result.ok]
    LOG.info(
        "Rendering finished: %s/%s label(s) in %.1f seconds",
        len(succeeded),
        request.count,
        time.perf_counter() - stage_start,
    )
    if not succeeded:
        raise UpstreamError("No labels generated.", stage=PipelineStage.RENDERING)
    if failed:
        partial = PartialFailure(
            failed_indexes=[result.index for result in failed],
            errors=[result.error or "" for result in failed],
        )
        LOG.warning("Partial failure for Form ID %s: %s", request.form_id, partial)

    label_ids = [result.document.id for result in succeeded]

    # Merging
    stage_start = time.perf_counter()
    try:
        merged_bytes = services.merge_client.merge(label_ids, services.archive)
    except FulfillmentError as exc:
        LOG.error("Merge failed for Form ID %s: %s", request.form_id, exc.message)
        if settings.cleanup_labels_on_merge_failure:
            cleanup_documents(services.archive, label_ids)
        raise UpstreamError(f"Merge failed: {exc.message}", stage=PipelineStage.MERGING) from exc
    LOG.info(
        "Merged %s label(s) in %.1f seconds", len(label_ids), time.perf_counter() - stage_start
    )

    # Uploading
    try:
        merged = services.archive.create(
            name, PDF_MIME_TYPE, merged_bytes, settings.merged_folder_id
        )
    except FulfillmentError as exc:
        LOG.error("Upload of %s failed: %s", name, exc.message)
        raise UpstreamError(
            f"Merged upload failed: {exc.message}", stage=PipelineStage.UPLOADING
        ) from exc
    LOG.info("Merged document archived as %s (%s)", merged.id, name)

    cleanup_documents(services.archive, label_ids)

    # Record updating
    record_updated = False
    try:
        records.update_after_generate(
            services.record_store,
            request.form_id,
            merged.id,
            merged.url,
            request.flea_provided,
            settings=services.record_settings,
            now=now,
        )
        record_updated = True
    except Exception:
        LOG.exception(
            "Record update failed for Form ID %s (stage %s)",
            request.form_id,
            PipelineStage.RECORD_UPDATING.value,
        )

    LOG.info(
        "Fulfillment for Form ID %s completed in %.1f seconds",
        request.form_id,
        time.perf_counter() - run_start,
    )
    return FulfillmentResult(
        count=len(succeeded),
        merged=merged,
        record_updated=record_updated,
        failed_labels=[result.index for result in failed],
    )
